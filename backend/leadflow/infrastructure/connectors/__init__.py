"""
Connector Infrastructure Package
Integrations with external systems
"""

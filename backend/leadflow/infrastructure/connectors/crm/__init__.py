"""
CRM Provider Package
"""
from leadflow.infrastructure.connectors.crm.base import CRMProvider, CRMLead, CRMOpportunity
from leadflow.infrastructure.connectors.crm.hubspot import HubSpotConnector
from leadflow.infrastructure.connectors.crm.memory import InMemoryCRM

__all__ = ["CRMProvider", "CRMLead", "CRMOpportunity", "HubSpotConnector", "InMemoryCRM"]

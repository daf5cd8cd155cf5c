"""
Error Taxonomy
Exceptions raised by the queue core and how the consumer loop treats them.

- TransientInfraError: store/CRM unreachable. Left pending, retried via reclaim.
- DataIntegrityError: malformed payload, broken invariant. Dead-lettered at once.
- NoAvailableHandler: business condition. Processors catch it and acknowledge.
"""
from typing import Optional


class LeadflowError(Exception):
    """Base class for all errors raised by the lead routing core."""
    def __init__(self, message: str = "Lead routing error"):
        self.message = message
        super().__init__(self.message)


class TransientInfraError(LeadflowError):
    """Raised when a backing store or the external CRM is unreachable."""
    def __init__(self, message: str = "Infrastructure temporarily unavailable"):
        super().__init__(message)


class DataIntegrityError(LeadflowError):
    """Raised for failures that redelivery cannot fix."""
    def __init__(self, message: str = "Data integrity violation"):
        super().__init__(message)


class MalformedMessageError(DataIntegrityError):
    """Raised when a queue payload is missing required fields."""
    def __init__(self, message: str = "Malformed queue message"):
        super().__init__(message)


class CrmRejectedError(DataIntegrityError):
    """Raised when the CRM rejects a request as invalid; resending it cannot succeed."""
    def __init__(self, message: str, status_code: int):
        self.status_code = status_code
        super().__init__(message)


class OpportunityNotFoundError(DataIntegrityError):
    """Raised when a message references an opportunity that does not exist."""
    def __init__(self, opportunity_id: str):
        self.opportunity_id = opportunity_id
        super().__init__(f"Opportunity {opportunity_id} not found")


class InvalidTransitionError(DataIntegrityError):
    """Raised when a lifecycle transition is not allowed."""
    def __init__(self, current: str, target: str, scope: str = "status"):
        self.current = current
        self.target = target
        self.scope = scope
        super().__init__(f"Invalid {scope} transition {current} -> {target}")


class ActiveOpportunityConflict(LeadflowError):
    """
    Raised by an opportunity repository when an active opportunity already
    exists for the same phone + destination.
    """
    def __init__(self, existing_id: str):
        self.existing_id = existing_id
        super().__init__(f"Active opportunity {existing_id} already exists")


class NoAvailableHandler(LeadflowError):
    """Raised when no handler is eligible for a (process, destination) pair."""
    def __init__(self, process: str, destination: Optional[str], source: Optional[str] = None):
        self.process = process
        self.destination = destination
        self.source = source
        super().__init__(
            f"No available handler for process={process} destination={destination}"
        )


class QueueGroupMissingError(LeadflowError):
    """Raised when reading from a consumer group that was never created."""
    def __init__(self, topic: str, group: str):
        self.topic = topic
        self.group = group
        super().__init__(f"Consumer group {group} does not exist on {topic}")

"""Domain interfaces (ports)"""
from .durable_queue import DurableQueue
from .notifier import Notifier
from .repositories import (
    OpportunityRepository,
    LeadRepository,
    AvailabilityRepository,
    ProcessDestinationRepository,
    ActivityRepository,
    FollowUpRepository,
)

__all__ = [
    "DurableQueue",
    "Notifier",
    "OpportunityRepository",
    "LeadRepository",
    "AvailabilityRepository",
    "ProcessDestinationRepository",
    "ActivityRepository",
    "FollowUpRepository",
]

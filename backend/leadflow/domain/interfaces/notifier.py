"""
Notifier Interface
Outbound notification when a handler receives a new lead
"""
from abc import ABC, abstractmethod

from leadflow.domain.models.opportunity import Opportunity
from leadflow.domain.models.availability import Availability


class Notifier(ABC):
    """Abstract base class for handler notification channels"""

    @abstractmethod
    async def notify_assignment(self, opportunity: Opportunity, handler: Availability) -> None:
        """Tell a handler that an opportunity was assigned to them"""
        pass

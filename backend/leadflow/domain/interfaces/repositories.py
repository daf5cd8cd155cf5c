"""
Repository Interfaces
Persistence ports used by the processors and the assignment engine
"""
from abc import ABC, abstractmethod
from typing import List, Optional
from datetime import datetime

from leadflow.domain.models.opportunity import Opportunity, OpportunityStatus, HandlerProcess
from leadflow.domain.models.lead import Lead
from leadflow.domain.models.availability import Availability, ProcessDestinationMap
from leadflow.domain.models.activity import Activity
from leadflow.domain.models.followup import FollowUp


class OpportunityRepository(ABC):
    """Opportunity documents. Never physically deleted."""

    @abstractmethod
    async def get(self, opportunity_id: str) -> Optional[Opportunity]:
        pass

    @abstractmethod
    async def get_by_trace_id(self, trace_id: str) -> Optional[Opportunity]:
        pass

    @abstractmethod
    async def find_active_duplicate(
        self,
        phone: str,
        email: Optional[str],
        destination: Optional[str],
        exclude_id: Optional[str] = None
    ) -> Optional[Opportunity]:
        """
        Find a live, non-duplicate opportunity for the same contact and
        destination. Matches on phone first, then on email.
        """
        pass

    @abstractmethod
    async def create(self, opportunity: Opportunity) -> Opportunity:
        """
        Insert an opportunity.

        Inserting an id that already exists returns the stored document.

        Raises:
            ActiveOpportunityConflict: a second live, non-duplicate
                opportunity for the same phone + destination
        """
        pass

    @abstractmethod
    async def save(self, opportunity: Opportunity) -> Opportunity:
        """Replace the stored document."""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: OpportunityStatus,
        updated_before: Optional[datetime] = None
    ) -> List[Opportunity]:
        pass


class LeadRepository(ABC):
    """Lead profiles keyed by phone."""

    @abstractmethod
    async def find_by_phone(self, phone: str) -> Optional[Lead]:
        pass

    @abstractmethod
    async def get_or_create(
        self,
        phone: str,
        name: Optional[str] = None,
        email: Optional[str] = None
    ) -> Lead:
        pass

    @abstractmethod
    async def attach_opportunity(self, lead_id: str, opportunity_id: str) -> Lead:
        """Add to active opportunities (idempotent)."""
        pass


class AvailabilityRepository(ABC):
    """Handler capacity records. Soft-deleted only."""

    @abstractmethod
    async def get(self, availability_id: str) -> Optional[Availability]:
        pass

    @abstractmethod
    async def add(self, availability: Availability) -> Availability:
        pass

    @abstractmethod
    async def list_candidates(
        self,
        process: HandlerProcess,
        destination: Optional[str]
    ) -> List[Availability]:
        """Available, non-deleted records for the process + destination."""
        pass

    @abstractmethod
    async def increment_if_unchanged(self, availability: Availability) -> Optional[Availability]:
        """
        Compare-and-swap increment of lead_count and total_count.

        Succeeds only if the stored counters still equal the ones on the
        given record.

        Returns:
            Updated record, or None if another writer got there first
        """
        pass

    @abstractmethod
    async def release(self, availability_id: str) -> Optional[Availability]:
        """Explicit decrement of lead_count (reassignment/removal only)."""
        pass


class ProcessDestinationRepository(ABC):
    """Destination to filtration-process routing configuration."""

    @abstractmethod
    async def list_for_destination(self, destination: str) -> List[ProcessDestinationMap]:
        pass

    @abstractmethod
    async def increment_counter_if_unchanged(
        self,
        mapping: ProcessDestinationMap
    ) -> Optional[ProcessDestinationMap]:
        pass


class ActivityRepository(ABC):
    """Append-only audit log."""

    @abstractmethod
    async def append(self, activity: Activity) -> Activity:
        pass

    @abstractmethod
    async def list_for_opportunity(self, opportunity_id: str) -> List[Activity]:
        pass


class FollowUpRepository(ABC):

    @abstractmethod
    async def find_open(self, opportunity_id: str) -> Optional[FollowUp]:
        pass

    @abstractmethod
    async def create(self, followup: FollowUp) -> FollowUp:
        pass

    @abstractmethod
    async def list_overdue(self, now: datetime) -> List[FollowUp]:
        pass

"""
In-Memory Repositories
Process-local implementations of the repository ports.

Used by the unit tests and for running the pipeline locally against the
in-memory queue. Each repository guards its writes with an asyncio.Lock so
the compare-and-swap operations behave like their store-side counterparts.
"""
import asyncio
import uuid
from typing import Dict, List, Optional
from datetime import datetime

from leadflow.core.errors import ActiveOpportunityConflict
from leadflow.domain.interfaces.repositories import (
    OpportunityRepository,
    LeadRepository,
    AvailabilityRepository,
    ProcessDestinationRepository,
    ActivityRepository,
    FollowUpRepository,
)
from leadflow.domain.models.opportunity import Opportunity, OpportunityStatus, HandlerProcess
from leadflow.domain.models.lead import Lead
from leadflow.domain.models.availability import Availability, ProcessDestinationMap
from leadflow.domain.models.activity import Activity
from leadflow.domain.models.followup import FollowUp, FollowUpStatus


def _same_destination(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").casefold() == (b or "").casefold()


class InMemoryOpportunityRepository(OpportunityRepository):

    def __init__(self):
        self._items: Dict[str, Opportunity] = {}
        self._lock = asyncio.Lock()

    async def get(self, opportunity_id: str) -> Optional[Opportunity]:
        return self._items.get(opportunity_id)

    async def get_by_trace_id(self, trace_id: str) -> Optional[Opportunity]:
        for opportunity in self._items.values():
            if opportunity.trace_id == trace_id:
                return opportunity
        return None

    def _find_active(
        self,
        phone: str,
        email: Optional[str],
        destination: Optional[str],
        exclude_id: Optional[str]
    ) -> Optional[Opportunity]:
        by_email = None
        for opportunity in sorted(self._items.values(), key=lambda o: o.created_at):
            if opportunity.id == exclude_id:
                continue
            if opportunity.is_duplicate or opportunity.is_terminal:
                continue
            if not _same_destination(opportunity.destination, destination):
                continue
            if opportunity.phone == phone:
                return opportunity
            if email and by_email is None and opportunity.email == email:
                by_email = opportunity
        return by_email

    async def find_active_duplicate(
        self,
        phone: str,
        email: Optional[str],
        destination: Optional[str],
        exclude_id: Optional[str] = None
    ) -> Optional[Opportunity]:
        return self._find_active(phone, email, destination, exclude_id)

    async def create(self, opportunity: Opportunity) -> Opportunity:
        async with self._lock:
            existing = self._items.get(opportunity.id)
            if existing is not None:
                return existing

            if not opportunity.is_duplicate:
                # Mirrors the partial unique index on (phone, destination)
                for other in self._items.values():
                    if (
                        not other.is_duplicate
                        and not other.is_terminal
                        and other.phone == opportunity.phone
                        and _same_destination(other.destination, opportunity.destination)
                    ):
                        raise ActiveOpportunityConflict(other.id)

            self._items[opportunity.id] = opportunity
            return opportunity

    async def save(self, opportunity: Opportunity) -> Opportunity:
        async with self._lock:
            self._items[opportunity.id] = opportunity
            return opportunity

    async def list_by_status(
        self,
        status: OpportunityStatus,
        updated_before: Optional[datetime] = None
    ) -> List[Opportunity]:
        return [
            o for o in self._items.values()
            if o.status == status and (updated_before is None or o.updated_at < updated_before)
        ]

    def all(self) -> List[Opportunity]:
        return list(self._items.values())


class InMemoryLeadRepository(LeadRepository):

    def __init__(self):
        self._by_phone: Dict[str, Lead] = {}
        self._lock = asyncio.Lock()

    async def find_by_phone(self, phone: str) -> Optional[Lead]:
        return self._by_phone.get(phone)

    async def get_or_create(
        self,
        phone: str,
        name: Optional[str] = None,
        email: Optional[str] = None
    ) -> Lead:
        async with self._lock:
            lead = self._by_phone.get(phone)
            if lead is None:
                lead = Lead(id=str(uuid.uuid4()), phone=phone, name=name, email=email)
                self._by_phone[phone] = lead
            return lead

    async def attach_opportunity(self, lead_id: str, opportunity_id: str) -> Lead:
        async with self._lock:
            for phone, lead in self._by_phone.items():
                if lead.id == lead_id:
                    updated = lead.with_opportunity(opportunity_id)
                    self._by_phone[phone] = updated
                    return updated
        raise KeyError(f"Lead {lead_id} not found")


class InMemoryAvailabilityRepository(AvailabilityRepository):

    def __init__(self, records: Optional[List[Availability]] = None):
        self._items: Dict[str, Availability] = {}
        self._lock = asyncio.Lock()
        for record in records or []:
            self._items[record.id] = record

    async def get(self, availability_id: str) -> Optional[Availability]:
        return self._items.get(availability_id)

    async def add(self, availability: Availability) -> Availability:
        async with self._lock:
            self._items[availability.id] = availability
            return availability

    async def list_candidates(
        self,
        process: HandlerProcess,
        destination: Optional[str]
    ) -> List[Availability]:
        return [a for a in self._items.values() if a.serves(process, destination)]

    async def increment_if_unchanged(self, availability: Availability) -> Optional[Availability]:
        async with self._lock:
            current = self._items.get(availability.id)
            if current is None:
                return None
            if (
                current.lead_count != availability.lead_count
                or current.total_count != availability.total_count
            ):
                return None
            updated = current.model_copy(update={
                "lead_count": current.lead_count + 1,
                "total_count": current.total_count + 1,
            })
            self._items[current.id] = updated
            return updated

    async def release(self, availability_id: str) -> Optional[Availability]:
        async with self._lock:
            current = self._items.get(availability_id)
            if current is None:
                return None
            updated = current.model_copy(update={"lead_count": max(0, current.lead_count - 1)})
            self._items[current.id] = updated
            return updated

    def all(self) -> List[Availability]:
        return list(self._items.values())


class InMemoryProcessDestinationRepository(ProcessDestinationRepository):

    def __init__(self, mappings: Optional[List[ProcessDestinationMap]] = None):
        self._items: Dict[str, ProcessDestinationMap] = {}
        self._lock = asyncio.Lock()
        for mapping in mappings or []:
            self._items[mapping.id] = mapping

    async def list_for_destination(self, destination: str) -> List[ProcessDestinationMap]:
        return [m for m in self._items.values() if m.covers(destination)]

    async def increment_counter_if_unchanged(
        self,
        mapping: ProcessDestinationMap
    ) -> Optional[ProcessDestinationMap]:
        async with self._lock:
            current = self._items.get(mapping.id)
            if current is None or current.counter != mapping.counter:
                return None
            updated = current.model_copy(update={"counter": current.counter + 1})
            self._items[current.id] = updated
            return updated

    async def get(self, mapping_id: str) -> Optional[ProcessDestinationMap]:
        return self._items.get(mapping_id)


class InMemoryActivityRepository(ActivityRepository):

    def __init__(self):
        self._entries: List[Activity] = []

    async def append(self, activity: Activity) -> Activity:
        self._entries.append(activity)
        return activity

    async def list_for_opportunity(self, opportunity_id: str) -> List[Activity]:
        return [a for a in self._entries if a.opportunity_id == opportunity_id]


class InMemoryFollowUpRepository(FollowUpRepository):

    def __init__(self):
        self._items: Dict[str, FollowUp] = {}

    async def find_open(self, opportunity_id: str) -> Optional[FollowUp]:
        for followup in self._items.values():
            if followup.opportunity_id == opportunity_id and followup.status == FollowUpStatus.OPEN:
                return followup
        return None

    async def create(self, followup: FollowUp) -> FollowUp:
        self._items[followup.id] = followup
        return followup

    async def list_overdue(self, now: datetime) -> List[FollowUp]:
        return [f for f in self._items.values() if f.is_overdue(now)]

"""
Supabase Repositories
Repository ports backed by Supabase (PostgREST) tables.

Tables:
- opportunities             - Opportunity documents (phase stored as JSONB)
- leads                     - Lead profiles, unique on phone
- availabilities            - Handler capacity records
- process_destination_maps  - Destination to process routing
- opportunity_activities    - Append-only audit log
- followups                 - Scheduled follow-ups

The opportunities table carries a partial unique index on
(phone, lower(destination)) WHERE is_duplicate = false AND status NOT IN
terminal statuses; a violation surfaces as ActiveOpportunityConflict.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional
from datetime import datetime

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from leadflow.core.errors import ActiveOpportunityConflict, TransientInfraError
from leadflow.domain.interfaces.repositories import (
    OpportunityRepository,
    LeadRepository,
    AvailabilityRepository,
    ProcessDestinationRepository,
    ActivityRepository,
    FollowUpRepository,
)
from leadflow.domain.models.opportunity import (
    Opportunity,
    OpportunityStatus,
    HandlerProcess,
    TERMINAL_STATUSES,
)
from leadflow.domain.models.lead import Lead
from leadflow.domain.models.availability import Availability, ProcessDestinationMap
from leadflow.domain.models.activity import Activity
from leadflow.domain.models.followup import FollowUp, FollowUpStatus

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def _execute(query: Any) -> Any:
    """Run a PostgREST query, mapping connectivity failures to TransientInfraError."""
    try:
        return query.execute()
    except APIError as e:
        if getattr(e, "code", None) == UNIQUE_VIOLATION:
            raise
        logger.error(f"Supabase query failed: {e}")
        raise TransientInfraError(f"Supabase query failed: {e}") from e
    except httpx.HTTPError as e:
        logger.error(f"Supabase unreachable: {e}")
        raise TransientInfraError(f"Supabase unreachable: {e}") from e


class SupabaseOpportunityRepository(OpportunityRepository):

    TABLE = "opportunities"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _one(self, response: Any) -> Optional[Opportunity]:
        if response.data:
            return Opportunity.from_record(response.data[0])
        return None

    async def get(self, opportunity_id: str) -> Optional[Opportunity]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq("id", opportunity_id).limit(1)
        )
        return self._one(response)

    async def get_by_trace_id(self, trace_id: str) -> Optional[Opportunity]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq("trace_id", trace_id).limit(1)
        )
        return self._one(response)

    def _active_query(self, destination: Optional[str]) -> Any:
        query = self.supabase.table(self.TABLE).select("*").eq(
            "is_duplicate", False
        ).not_.in_("status", [s.value for s in TERMINAL_STATUSES])

        if destination:
            query = query.ilike("destination", destination)
        else:
            query = query.is_("destination", "null")
        return query.order("created_at").limit(1)

    async def find_active_duplicate(
        self,
        phone: str,
        email: Optional[str],
        destination: Optional[str],
        exclude_id: Optional[str] = None
    ) -> Optional[Opportunity]:
        lookups = [("phone", phone)]
        if email:
            lookups.append(("email", email))

        for column, value in lookups:
            query = self._active_query(destination).eq(column, value)
            if exclude_id:
                query = query.neq("id", exclude_id)
            found = self._one(_execute(query))
            if found:
                return found
        return None

    async def create(self, opportunity: Opportunity) -> Opportunity:
        existing = await self.get(opportunity.id)
        if existing:
            return existing

        try:
            response = _execute(self.supabase.table(self.TABLE).insert(opportunity.to_record()))
        except APIError:
            # Unique violation: either the same id raced us, or another live
            # opportunity holds this phone + destination
            existing = await self.get(opportunity.id)
            if existing:
                return existing
            active = await self.find_active_duplicate(
                opportunity.phone, None, opportunity.destination, exclude_id=opportunity.id
            )
            raise ActiveOpportunityConflict(active.id if active else "unknown")

        return self._one(response) or opportunity

    async def save(self, opportunity: Opportunity) -> Opportunity:
        record = opportunity.to_record()
        response = _execute(
            self.supabase.table(self.TABLE).update(record).eq("id", opportunity.id)
        )
        return self._one(response) or opportunity

    async def list_by_status(
        self,
        status: OpportunityStatus,
        updated_before: Optional[datetime] = None
    ) -> List[Opportunity]:
        query = self.supabase.table(self.TABLE).select("*").eq("status", status.value)
        if updated_before:
            query = query.lt("updated_at", updated_before.isoformat())
        response = _execute(query)
        return [Opportunity.from_record(row) for row in response.data or []]


class SupabaseLeadRepository(LeadRepository):

    TABLE = "leads"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def find_by_phone(self, phone: str) -> Optional[Lead]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq("phone", phone).limit(1)
        )
        if response.data:
            return Lead.model_validate(response.data[0])
        return None

    async def get_or_create(
        self,
        phone: str,
        name: Optional[str] = None,
        email: Optional[str] = None
    ) -> Lead:
        existing = await self.find_by_phone(phone)
        if existing:
            return existing

        lead = Lead(id=str(uuid.uuid4()), phone=phone, name=name, email=email)
        # Unique on phone: a concurrent insert loses and re-reads the winner
        _execute(
            self.supabase.table(self.TABLE).upsert(
                lead.model_dump(mode="json"),
                on_conflict="phone",
                ignore_duplicates=True
            )
        )
        return await self.find_by_phone(phone) or lead

    async def attach_opportunity(self, lead_id: str, opportunity_id: str) -> Lead:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq("id", lead_id).limit(1)
        )
        if not response.data:
            raise KeyError(f"Lead {lead_id} not found")

        lead = Lead.model_validate(response.data[0])
        updated = lead.with_opportunity(opportunity_id)
        if updated is not lead:
            _execute(
                self.supabase.table(self.TABLE).update({
                    "active_opportunity_ids": updated.active_opportunity_ids
                }).eq("id", lead_id)
            )
        return updated


class SupabaseAvailabilityRepository(AvailabilityRepository):

    TABLE = "availabilities"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get(self, availability_id: str) -> Optional[Availability]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq("id", availability_id).limit(1)
        )
        if response.data:
            return Availability.model_validate(response.data[0])
        return None

    async def add(self, availability: Availability) -> Availability:
        _execute(self.supabase.table(self.TABLE).insert(availability.model_dump(mode="json")))
        return availability

    async def list_candidates(
        self,
        process: HandlerProcess,
        destination: Optional[str]
    ) -> List[Availability]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq(
                "process", process.value
            ).eq("is_available", True).eq("is_deleted", False)
        )
        records = [Availability.model_validate(row) for row in response.data or []]
        return [a for a in records if a.serves(process, destination)]

    async def increment_if_unchanged(self, availability: Availability) -> Optional[Availability]:
        # Conditional update: only matches while both counters are unchanged
        response = _execute(
            self.supabase.table(self.TABLE).update({
                "lead_count": availability.lead_count + 1,
                "total_count": availability.total_count + 1,
            }).eq("id", availability.id).eq(
                "lead_count", availability.lead_count
            ).eq("total_count", availability.total_count)
        )
        if response.data:
            return Availability.model_validate(response.data[0])
        return None

    async def release(self, availability_id: str) -> Optional[Availability]:
        for _ in range(5):
            current = await self.get(availability_id)
            if current is None:
                return None
            if current.lead_count == 0:
                return current
            response = _execute(
                self.supabase.table(self.TABLE).update({
                    "lead_count": current.lead_count - 1
                }).eq("id", availability_id).eq("lead_count", current.lead_count)
            )
            if response.data:
                return Availability.model_validate(response.data[0])
        raise TransientInfraError(f"Could not release availability {availability_id}")


class SupabaseProcessDestinationRepository(ProcessDestinationRepository):

    TABLE = "process_destination_maps"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def list_for_destination(self, destination: str) -> List[ProcessDestinationMap]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq("is_active", True)
        )
        mappings = [ProcessDestinationMap.model_validate(row) for row in response.data or []]
        return [m for m in mappings if m.covers(destination)]

    async def increment_counter_if_unchanged(
        self,
        mapping: ProcessDestinationMap
    ) -> Optional[ProcessDestinationMap]:
        response = _execute(
            self.supabase.table(self.TABLE).update({
                "counter": mapping.counter + 1
            }).eq("id", mapping.id).eq("counter", mapping.counter)
        )
        if response.data:
            return ProcessDestinationMap.model_validate(response.data[0])
        return None


class SupabaseActivityRepository(ActivityRepository):

    TABLE = "opportunity_activities"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def append(self, activity: Activity) -> Activity:
        _execute(self.supabase.table(self.TABLE).insert(activity.model_dump(mode="json")))
        return activity

    async def list_for_opportunity(self, opportunity_id: str) -> List[Activity]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq(
                "opportunity_id", opportunity_id
            ).order("timestamp")
        )
        return [Activity.model_validate(row) for row in response.data or []]


class SupabaseFollowUpRepository(FollowUpRepository):

    TABLE = "followups"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def find_open(self, opportunity_id: str) -> Optional[FollowUp]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq(
                "opportunity_id", opportunity_id
            ).eq("status", FollowUpStatus.OPEN.value).limit(1)
        )
        if response.data:
            return FollowUp.model_validate(response.data[0])
        return None

    async def create(self, followup: FollowUp) -> FollowUp:
        _execute(self.supabase.table(self.TABLE).insert(followup.model_dump(mode="json")))
        return followup

    async def list_overdue(self, now: datetime) -> List[FollowUp]:
        response = _execute(
            self.supabase.table(self.TABLE).select("*").eq(
                "status", FollowUpStatus.OPEN.value
            ).lt("due_at", now.isoformat())
        )
        return [FollowUp.model_validate(row) for row in response.data or []]


def build_supabase_repositories(supabase: Client) -> Dict[str, Any]:
    """Instantiate every Supabase repository on one client."""
    return {
        "opportunities": SupabaseOpportunityRepository(supabase),
        "leads": SupabaseLeadRepository(supabase),
        "availabilities": SupabaseAvailabilityRepository(supabase),
        "destination_maps": SupabaseProcessDestinationRepository(supabase),
        "activities": SupabaseActivityRepository(supabase),
        "followups": SupabaseFollowUpRepository(supabase),
    }

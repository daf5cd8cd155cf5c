"""
CRM Sync Processor
Consumes the sync topic: promotes an opportunity into the CRM phase.

Steps per message:
1. UPCOMING destination -> UPCOMING_FRESH_LEAD, done
2. No CRM assignee -> SALES assignment, then OPEN with CrmState (persisted
   before any CRM call so a retried delivery does not charge a handler twice).
   A PSV/WEST lead must be QUALIFIED first, otherwise InvalidTransitionError
3. Existing-lead check in the CRM, create-or-link the lead
4. Find-or-create the CRM opportunity keyed by our trace id
5. Persist external ids (crm_entry_at from the first promotion is kept)
6. Open follow-up due FOLLOWUP_SLA after assignment, unless one is open

Every step is idempotent, so a redelivery after a partial failure converges
on the same end state. CRM outages surface as TransientInfraError and are
retried by the queue; this processor makes one attempt per delivery. A request
the CRM rejects (CrmRejectedError) is dead-lettered like any integrity failure.
"""
import logging
from datetime import timedelta
from typing import Optional

from leadflow.core.errors import NoAvailableHandler, OpportunityNotFoundError
from leadflow.core.logging import set_trace_id
from leadflow.domain.interfaces.repositories import (
    OpportunityRepository,
    ActivityRepository,
    FollowUpRepository,
)
from leadflow.domain.models.activity import Activity, ActivityPhase, FieldChange
from leadflow.domain.models.followup import FollowUp, FOLLOWUP_SLA
from leadflow.domain.models.messages import SyncMessage, parse_payload
from leadflow.domain.models.opportunity import (
    Opportunity,
    OpportunityStatus,
    FilterType,
    HandlerProcess,
    FiltrationState,
    CrmState,
)
from leadflow.domain.models.queue_message import QueueMessage
from leadflow.domain.services.assignment_engine import AssignmentEngine
from leadflow.domain.services.lifecycle import LifecycleStateMachine, Transition
from leadflow.infrastructure.connectors.crm.base import CRMProvider
from leadflow.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class CrmSyncProcessor:
    """
    Handles one sync message at a time.

    Usage:
        processor = CrmSyncProcessor(opportunities, activities, followups, engine, crm)
        opportunity = await processor.handle(message)
    """

    def __init__(
        self,
        opportunities: OpportunityRepository,
        activities: ActivityRepository,
        followups: FollowUpRepository,
        assignment_engine: AssignmentEngine,
        crm: CRMProvider,
        lifecycle: Optional[LifecycleStateMachine] = None,
        followup_sla: timedelta = FOLLOWUP_SLA,
        clock: Optional[Clock] = None
    ):
        self.opportunities = opportunities
        self.activities = activities
        self.followups = followups
        self.assignment_engine = assignment_engine
        self.crm = crm
        self.lifecycle = lifecycle or LifecycleStateMachine()
        self.followup_sla = followup_sla
        self._clock = clock or utc_now

    async def handle(self, message: QueueMessage) -> Opportunity:
        sync = parse_payload(SyncMessage, message.payload)

        opportunity = await self.opportunities.get(sync.opportunity_id)
        if opportunity is None:
            raise OpportunityNotFoundError(sync.opportunity_id)
        set_trace_id(opportunity.trace_id)

        if opportunity.status in (OpportunityStatus.WON, OpportunityStatus.LOST):
            logger.info(f"Opportunity {opportunity.id} already closed ({opportunity.status.value})")
            return opportunity

        # 1. Not decided yet: park it
        if opportunity.is_upcoming:
            return await self._park_upcoming(opportunity)

        # 2. CRM assignee
        crm_state = opportunity.crm_stage_meta
        if crm_state is None or crm_state.assignee_id is None:
            # Before assignment, so a rejected promotion charges no handler
            self.lifecycle.ensure_promotable(opportunity)

            try:
                handler = await self.assignment_engine.assign(
                    HandlerProcess.SALES, opportunity.destination, opportunity.source
                )
            except NoAvailableHandler as e:
                logger.warning(f"Opportunity {opportunity.id} not promoted: {e.message}")
                await self.activities.append(Activity(
                    opportunity_id=opportunity.id,
                    trace_id=opportunity.trace_id,
                    phase=ActivityPhase.ASSIGNMENT,
                    action="crm_assignment_failed",
                    changes=[FieldChange(field="status", old=opportunity.status.value)]
                ))
                return opportunity

            opportunity = await self._apply(self._promote(opportunity, handler.id))

        # 3-5. External CRM records
        if opportunity.crm_stage_meta.crm_opportunity_id is None:
            opportunity = await self._sync_external(opportunity)

        # 6. Follow-up
        await self._ensure_followup(opportunity)
        return opportunity

    async def _park_upcoming(self, opportunity: Opportunity) -> Opportunity:
        if opportunity.status == OpportunityStatus.UPCOMING_FRESH_LEAD:
            return opportunity

        phase = opportunity.filtration_status or FiltrationState(filter_type=FilterType.UPCOMING)
        return await self._apply(self.lifecycle.transition(
            opportunity,
            OpportunityStatus.UPCOMING_FRESH_LEAD,
            phase=phase.model_copy(update={"filter_type": FilterType.UPCOMING}),
            action="routed:upcoming"
        ))

    def _promote(self, opportunity: Opportunity, assignee_id: str) -> Transition:
        now = self._clock()
        current = opportunity.crm_stage_meta or CrmState()
        phase = current.model_copy(update={
            "assignee_id": assignee_id,
            "assigned_at": now,
            "crm_entry_at": current.crm_entry_at or now,
        })
        return self.lifecycle.transition(
            opportunity,
            OpportunityStatus.OPEN,
            phase=phase,
            action="promoted:crm",
            activity_phase=ActivityPhase.CRM
        )

    async def _sync_external(self, opportunity: Opportunity) -> Opportunity:
        crm_state = opportunity.crm_stage_meta

        crm_lead = await self.crm.check_lead_exists(opportunity.phone, opportunity.email)
        if crm_lead is None:
            crm_lead = await self.crm.create_lead(
                opportunity.name,
                opportunity.phone,
                opportunity.email
            )
        else:
            logger.info(f"Linked existing CRM lead {crm_lead.id}")

        crm_opportunity = await self.crm.find_opportunity_by_reference(opportunity.trace_id)
        if crm_opportunity is None:
            crm_opportunity = await self.crm.create_opportunity(
                name=f"{opportunity.name or opportunity.phone} - {opportunity.destination or 'N/A'}",
                lead_id=crm_lead.id,
                reference=opportunity.trace_id,
                owner_id=await self._crm_owner_id(crm_state.assignee_id)
            )

        updated = opportunity.evolve(phase=crm_state.model_copy(update={
            "crm_lead_id": crm_lead.id,
            "crm_opportunity_id": crm_opportunity.id,
        }))
        updated = await self.opportunities.save(updated)
        await self.activities.append(Activity(
            opportunity_id=updated.id,
            trace_id=updated.trace_id,
            phase=ActivityPhase.CRM,
            action="crm_synced",
            changes=[
                FieldChange(field="phase.crm_lead_id", new=crm_lead.id),
                FieldChange(field="phase.crm_opportunity_id", new=crm_opportunity.id),
            ]
        ))
        logger.info(
            f"Opportunity {updated.id} synced to {self.crm.provider_name} "
            f"(lead={crm_lead.id}, opportunity={crm_opportunity.id})"
        )
        return updated

    async def _crm_owner_id(self, assignee_id: Optional[str]) -> Optional[str]:
        # Handler ids are ours; the CRM only knows its own owner ids
        if not assignee_id:
            return None
        handler = await self.assignment_engine.availabilities.get(assignee_id)
        return handler.crm_owner_id if handler else None

    async def _ensure_followup(self, opportunity: Opportunity) -> Optional[FollowUp]:
        if await self.followups.find_open(opportunity.id):
            return None

        crm_state = opportunity.crm_stage_meta
        assigned_at = crm_state.assigned_at or self._clock()
        followup = await self.followups.create(FollowUp(
            opportunity_id=opportunity.id,
            trace_id=opportunity.trace_id,
            assignee_id=crm_state.assignee_id,
            due_at=assigned_at + self.followup_sla
        ))
        logger.info(f"Follow-up {followup.id} due {followup.due_at.isoformat()}")
        return followup

    async def _apply(self, transition: Transition) -> Opportunity:
        opportunity = await self.opportunities.save(transition.opportunity)
        await self.activities.append(transition.activity)
        return opportunity

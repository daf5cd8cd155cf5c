"""
Lead Intake Processor
Consumes the intake topic: dedup, lead profile, opportunity creation,
classification, assignment and routing.

Ids are derived from (topic, message id), so a redelivered message finds the
opportunity its earlier attempt created and resumes from the recorded state:
- classification is checkpointed on the opportunity before assignment
- an opportunity that already left UNDER_PROCESSING is not routed again,
  except that an OPEN one re-publishes its sync message (the sync processor
  is idempotent)
"""
import logging
import uuid
from typing import Optional, Tuple

from leadflow.core.errors import ActiveOpportunityConflict, NoAvailableHandler
from leadflow.core.logging import set_trace_id
from leadflow.domain.interfaces.durable_queue import DurableQueue
from leadflow.domain.interfaces.notifier import Notifier
from leadflow.domain.interfaces.repositories import (
    OpportunityRepository,
    LeadRepository,
    ActivityRepository,
)
from leadflow.domain.models.activity import Activity, ActivityPhase, FieldChange
from leadflow.domain.models.messages import IntakeMessage, LeadData, SyncMessage, parse_payload
from leadflow.domain.models.opportunity import (
    Opportunity,
    OpportunityStatus,
    FilterType,
    HandlerProcess,
    FiltrationState,
    CrmStage,
    CrmState,
    DuplicateState,
)
from leadflow.domain.models.queue_message import QueueMessage
from leadflow.domain.services.assignment_engine import AssignmentEngine
from leadflow.domain.services.filter_classifier import FilterClassifier
from leadflow.domain.services.lifecycle import LifecycleStateMachine, Transition

logger = logging.getLogger(__name__)

# Namespace for ids derived from intake messages
INTAKE_NAMESPACE = uuid.UUID("6f1d0c4e-3b7a-5e2f-9a61-4c8d2b7e0a15")

_FILTERED_STATUS = {
    FilterType.PSV: OpportunityStatus.IN_PSV,
    FilterType.WEST: OpportunityStatus.IN_WEST,
}


def derive_ids(topic: str, message_id: str) -> Tuple[str, str]:
    """
    Deterministic (trace_id, opportunity_id) for an intake message.

    The same message always maps to the same opportunity, which is what makes
    redelivery safe.
    """
    trace_id = str(uuid.uuid5(INTAKE_NAMESPACE, f"{topic}:{message_id}"))
    opportunity_id = str(uuid.uuid5(INTAKE_NAMESPACE, f"opportunity:{trace_id}"))
    return trace_id, opportunity_id


class LeadIntakeProcessor:
    """
    Handles one intake message at a time.

    The consumer worker acknowledges the message after handle() returns;
    NoAvailableHandler is a business outcome and is handled here.
    """

    def __init__(
        self,
        queue: DurableQueue,
        opportunities: OpportunityRepository,
        leads: LeadRepository,
        activities: ActivityRepository,
        assignment_engine: AssignmentEngine,
        classifier: FilterClassifier,
        notifier: Notifier,
        sync_topic: str,
        lifecycle: Optional[LifecycleStateMachine] = None
    ):
        self.queue = queue
        self.opportunities = opportunities
        self.leads = leads
        self.activities = activities
        self.assignment_engine = assignment_engine
        self.classifier = classifier
        self.notifier = notifier
        self.sync_topic = sync_topic
        self.lifecycle = lifecycle or LifecycleStateMachine()

    async def handle(self, message: QueueMessage) -> Opportunity:
        intake = parse_payload(IntakeMessage, message.payload)
        trace_id, opportunity_id = derive_ids(message.topic, message.id)
        set_trace_id(trace_id)

        opportunity = await self.opportunities.get(opportunity_id)
        if opportunity is None:
            opportunity = await self._create(message, intake, trace_id, opportunity_id)
        else:
            logger.info(
                f"Resuming opportunity {opportunity.id} in {opportunity.status.value} "
                f"(delivery {message.delivery_count})"
            )
            if opportunity.lead_id and not opportunity.is_duplicate:
                await self.leads.attach_opportunity(opportunity.lead_id, opportunity.id)

        if opportunity.is_duplicate:
            return opportunity

        return await self._route(opportunity, intake.lead_data)

    async def _create(
        self,
        message: QueueMessage,
        intake: IntakeMessage,
        trace_id: str,
        opportunity_id: str
    ) -> Opportunity:
        lead_data = intake.lead_data

        # 1. Duplicate check
        original = await self.opportunities.find_active_duplicate(
            lead_data.phone, lead_data.email, lead_data.destination
        )
        if original is not None:
            return await self._create_duplicate(
                message, intake, trace_id, opportunity_id, original.id
            )

        # 2. Lead profile
        lead = await self.leads.get_or_create(lead_data.phone, lead_data.name, lead_data.email)

        # 3. Opportunity
        opportunity = Opportunity(
            id=opportunity_id,
            trace_id=trace_id,
            lead_id=lead.id,
            source_message_id=message.id,
            name=lead_data.name,
            phone=lead_data.phone,
            email=lead_data.email,
            destination=lead_data.destination,
            source=intake.source
        )
        try:
            opportunity = await self.opportunities.create(opportunity)
        except ActiveOpportunityConflict as e:
            # A concurrent intake for the same phone + destination won
            logger.info(f"Lost creation race to {e.existing_id}, storing as duplicate")
            return await self._create_duplicate(
                message, intake, trace_id, opportunity_id, e.existing_id
            )

        await self.leads.attach_opportunity(lead.id, opportunity.id)
        await self.activities.append(Activity(
            opportunity_id=opportunity.id,
            trace_id=trace_id,
            phase=ActivityPhase.INTAKE,
            action="created",
            changes=[FieldChange(field="status", new=opportunity.status.value)]
        ))
        logger.info(f"Created opportunity {opportunity.id} from {intake.source or 'unknown source'}")
        return opportunity

    async def _create_duplicate(
        self,
        message: QueueMessage,
        intake: IntakeMessage,
        trace_id: str,
        opportunity_id: str,
        original_id: str
    ) -> Opportunity:
        lead_data = intake.lead_data
        duplicate = await self.opportunities.create(Opportunity(
            id=opportunity_id,
            trace_id=trace_id,
            source_message_id=message.id,
            name=lead_data.name,
            phone=lead_data.phone,
            email=lead_data.email,
            destination=lead_data.destination,
            source=intake.source,
            status=OpportunityStatus.DORMANT,
            phase=DuplicateState(duplicate_of_id=original_id)
        ))
        await self.activities.append(Activity(
            opportunity_id=duplicate.id,
            trace_id=trace_id,
            phase=ActivityPhase.INTAKE,
            action="duplicate",
            changes=[
                FieldChange(field="status", new=OpportunityStatus.DORMANT.value),
                FieldChange(field="duplicate_of_id", new=original_id),
            ]
        ))
        logger.info(f"Opportunity {duplicate.id} duplicates {original_id}, stored as DORMANT")
        return duplicate

    async def _route(self, opportunity: Opportunity, lead_data: LeadData) -> Opportunity:
        if opportunity.status == OpportunityStatus.OPEN:
            await self._publish_sync(opportunity)
            return opportunity

        if opportunity.status != OpportunityStatus.UNDER_PROCESSING:
            logger.info(f"Opportunity {opportunity.id} already routed to {opportunity.status.value}")
            return opportunity

        # 4. Classification (checkpointed)
        checkpoint = opportunity.filtration_status
        if checkpoint is None:
            filter_type = await self.classifier.classify(opportunity.destination, lead_data.model_dump())
            opportunity = await self._checkpoint(opportunity, filter_type)
        else:
            filter_type = checkpoint.filter_type

        # 5. Routing
        if filter_type == FilterType.NO_FILTER:
            transition = self.lifecycle.transition(
                opportunity,
                OpportunityStatus.OPEN,
                phase=CrmState(stage=CrmStage.FRESH_LEAD),
                action="promoted:no_filter"
            )
            opportunity = await self._apply(transition)
            await self._publish_sync(opportunity)
            return opportunity

        if filter_type == FilterType.UNKNOWN:
            return await self._apply(self.lifecycle.transition(
                opportunity,
                OpportunityStatus.RESOLVING_UNKNOWN,
                phase=opportunity.filtration_status,
                action="routed:unknown"
            ))

        if filter_type == FilterType.UPCOMING:
            return await self._apply(self.lifecycle.transition(
                opportunity,
                OpportunityStatus.UPCOMING_FRESH_LEAD,
                phase=opportunity.filtration_status,
                action="routed:upcoming"
            ))

        return await self._assign_filtration(opportunity, filter_type)

    async def _checkpoint(self, opportunity: Opportunity, filter_type: FilterType) -> Opportunity:
        opportunity = await self.opportunities.save(
            opportunity.evolve(phase=FiltrationState(filter_type=filter_type))
        )
        await self.activities.append(Activity(
            opportunity_id=opportunity.id,
            trace_id=opportunity.trace_id,
            phase=ActivityPhase.INTAKE,
            action="classified",
            changes=[FieldChange(field="phase.filter_type", new=filter_type.value)]
        ))
        return opportunity

    async def _assign_filtration(self, opportunity: Opportunity, filter_type: FilterType) -> Opportunity:
        process = HandlerProcess(filter_type.value)
        try:
            handler = await self.assignment_engine.assign(
                process, opportunity.destination, opportunity.source
            )
        except NoAvailableHandler as e:
            logger.warning(f"Opportunity {opportunity.id} left unassigned: {e.message}")
            await self.activities.append(Activity(
                opportunity_id=opportunity.id,
                trace_id=opportunity.trace_id,
                phase=ActivityPhase.ASSIGNMENT,
                action="assignment_failed",
                changes=[FieldChange(field="phase.assignee_id", new=None)]
            ))
            return opportunity

        phase = opportunity.filtration_status.model_copy(update={"assignee_id": handler.id})
        opportunity = await self._apply(self.lifecycle.transition(
            opportunity,
            _FILTERED_STATUS[filter_type],
            phase=phase,
            action=f"assigned:{process.value}"
        ))
        await self.notifier.notify_assignment(opportunity, handler)
        return opportunity

    async def _apply(self, transition: Transition) -> Opportunity:
        opportunity = await self.opportunities.save(transition.opportunity)
        await self.activities.append(transition.activity)
        return opportunity

    async def _publish_sync(self, opportunity: Opportunity) -> str:
        message = SyncMessage(opportunity_id=opportunity.id, trace_id=opportunity.trace_id)
        message_id = await self.queue.publish(self.sync_topic, message.to_payload())
        logger.info(f"Published opportunity {opportunity.id} to {self.sync_topic} ({message_id})")
        return message_id

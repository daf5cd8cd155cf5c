"""
Operator Actions
Administrative lifecycle mutations (filtration follow-ups, qualification,
destination resolution, CRM stage moves, reassignment).

Each action loads the opportunity, applies one lifecycle transition, persists
the result with its Activity, and returns the updated opportunity.
Qualification hands the opportunity to the CRM sync processor by publishing
to the sync topic.
"""
import logging
from typing import List, Optional

from leadflow.core.errors import InvalidTransitionError, OpportunityNotFoundError
from leadflow.domain.interfaces.durable_queue import DurableQueue
from leadflow.domain.interfaces.repositories import (
    OpportunityRepository,
    ActivityRepository,
    AvailabilityRepository,
)
from leadflow.domain.models.messages import SyncMessage
from leadflow.domain.models.opportunity import (
    Opportunity,
    OpportunityStatus,
    FilterType,
    HandlerProcess,
    FiltrationStage,
    FiltrationState,
    CrmStage,
    CrmState,
)
from leadflow.domain.services.assignment_engine import AssignmentEngine
from leadflow.domain.services.filter_classifier import FilterClassifier
from leadflow.domain.services.lifecycle import LifecycleStateMachine, Transition

logger = logging.getLogger(__name__)

_RESOLVABLE = {OpportunityStatus.RESOLVING_UNKNOWN, OpportunityStatus.UPCOMING_FRESH_LEAD}

_PARKED_STATUS = {
    FilterType.UNKNOWN: OpportunityStatus.RESOLVING_UNKNOWN,
    FilterType.UPCOMING: OpportunityStatus.UPCOMING_FRESH_LEAD,
}

_FILTERED_STATUS = {
    FilterType.PSV: OpportunityStatus.IN_PSV,
    FilterType.WEST: OpportunityStatus.IN_WEST,
}


class OperatorActions:

    def __init__(
        self,
        queue: DurableQueue,
        opportunities: OpportunityRepository,
        activities: ActivityRepository,
        availabilities: AvailabilityRepository,
        assignment_engine: AssignmentEngine,
        classifier: FilterClassifier,
        sync_topic: str,
        lifecycle: Optional[LifecycleStateMachine] = None
    ):
        self.queue = queue
        self.opportunities = opportunities
        self.activities = activities
        self.availabilities = availabilities
        self.assignment_engine = assignment_engine
        self.classifier = classifier
        self.sync_topic = sync_topic
        self.lifecycle = lifecycle or LifecycleStateMachine()

    async def _load(self, opportunity_id: str) -> Opportunity:
        opportunity = await self.opportunities.get(opportunity_id)
        if opportunity is None:
            raise OpportunityNotFoundError(opportunity_id)
        return opportunity

    async def _apply(self, transition: Transition) -> Opportunity:
        opportunity = await self.opportunities.save(transition.opportunity)
        await self.activities.append(transition.activity)
        return opportunity

    async def _publish_sync(self, opportunity: Opportunity) -> str:
        message = SyncMessage(opportunity_id=opportunity.id, trace_id=opportunity.trace_id)
        return await self.queue.publish(self.sync_topic, message.to_payload())

    async def record_filtration_follow_up(
        self,
        opportunity_id: str,
        actor: str = "operator"
    ) -> Opportunity:
        opportunity = await self._load(opportunity_id)
        return await self._apply(
            self.lifecycle.advance_filtration(opportunity, FiltrationStage.FOLLOW_UP, actor=actor)
        )

    async def qualify(self, opportunity_id: str, actor: str = "operator") -> Opportunity:
        """Mark QUALIFIED and request promotion into the CRM phase."""
        opportunity = await self._load(opportunity_id)
        opportunity = await self._apply(
            self.lifecycle.advance_filtration(opportunity, FiltrationStage.QUALIFIED, actor=actor)
        )
        message_id = await self._publish_sync(opportunity)
        logger.info(f"Opportunity {opportunity.id} qualified, sync requested ({message_id})")
        return opportunity

    async def disqualify(
        self,
        opportunity_id: str,
        reasons: List[str],
        actor: str = "operator"
    ) -> Opportunity:
        opportunity = await self._load(opportunity_id)
        return await self._apply(self.lifecycle.advance_filtration(
            opportunity, FiltrationStage.DISQUALIFIED, reasons=reasons, actor=actor
        ))

    async def resolve_destination(
        self,
        opportunity_id: str,
        destination: str,
        actor: str = "operator"
    ) -> Opportunity:
        """
        Set the destination of a parked opportunity and route it again.

        Raises:
            InvalidTransitionError: Opportunity is not RESOLVING_UNKNOWN/UPCOMING_FRESH_LEAD
            NoAvailableHandler: Destination routes to a filtration process with no handler
        """
        opportunity = await self._load(opportunity_id)
        if opportunity.status not in _RESOLVABLE:
            raise InvalidTransitionError(
                opportunity.status.value, "resolve_destination", scope="destination"
            )

        opportunity = opportunity.evolve(destination=destination)
        filter_type = await self.classifier.classify(destination)

        if filter_type == FilterType.NO_FILTER:
            opportunity = await self._apply(self.lifecycle.transition(
                opportunity,
                OpportunityStatus.OPEN,
                phase=CrmState(stage=CrmStage.FRESH_LEAD),
                action="promoted:no_filter",
                actor=actor
            ))
            await self._publish_sync(opportunity)
            return opportunity

        if filter_type in _PARKED_STATUS:
            return await self._apply(self.lifecycle.transition(
                opportunity,
                _PARKED_STATUS[filter_type],
                phase=FiltrationState(filter_type=filter_type),
                action=f"routed:{filter_type.value.lower()}",
                actor=actor
            ))

        process = HandlerProcess(filter_type.value)
        handler = await self.assignment_engine.assign(process, destination, opportunity.source)
        return await self._apply(self.lifecycle.transition(
            opportunity,
            _FILTERED_STATUS[filter_type],
            phase=FiltrationState(filter_type=filter_type, assignee_id=handler.id),
            action=f"assigned:{process.value}",
            actor=actor
        ))

    async def move_crm_stage(
        self,
        opportunity_id: str,
        stage: CrmStage,
        sub_stage: Optional[str] = None,
        actor: str = "operator"
    ) -> Opportunity:
        opportunity = await self._load(opportunity_id)
        return await self._apply(
            self.lifecycle.advance_crm(opportunity, stage, sub_stage=sub_stage, actor=actor)
        )

    async def reassign(
        self,
        opportunity_id: str,
        availability_id: str,
        actor: str = "operator"
    ) -> Opportunity:
        """
        Move the opportunity to another handler.

        The new handler is charged before the old one is released, so a
        failure in between over-counts instead of losing load.
        """
        opportunity = await self._load(opportunity_id)
        phase = opportunity.phase
        previous = phase.assignee_id if isinstance(phase, (FiltrationState, CrmState)) else None
        if previous == availability_id:
            return opportunity

        # Validates before touching any counter
        transition = self.lifecycle.reassign(opportunity, availability_id, actor=actor)

        await self.assignment_engine.charge(availability_id)
        if previous:
            await self.availabilities.release(previous)

        logger.info(f"Opportunity {opportunity.id} reassigned {previous} -> {availability_id}")
        return await self._apply(transition)

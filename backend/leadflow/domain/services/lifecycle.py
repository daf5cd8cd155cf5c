"""
Lifecycle State Machine
Legal status, filtration-stage and CRM-stage transitions for an opportunity.

Every accepted transition returns the updated opportunity together with the
Activity that records it; callers persist both. Rejected transitions raise
InvalidTransitionError, which the consumer loop treats as a data integrity
failure.
"""
import logging
from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional

from leadflow.core.errors import InvalidTransitionError
from leadflow.domain.models.activity import Activity, ActivityPhase, FieldChange
from leadflow.domain.models.opportunity import (
    Opportunity,
    OpportunityStatus,
    OpportunityPhase,
    FiltrationStage,
    FiltrationState,
    CrmStage,
    CrmState,
    PUSHED_STATUSES,
)
from leadflow.utils.clock import utc_now

logger = logging.getLogger(__name__)

S = OpportunityStatus

_REROUTABLE = frozenset({
    S.IN_PSV, S.IN_WEST, S.OPEN, S.RESOLVING_UNKNOWN, S.UPCOMING_FRESH_LEAD,
})

STATUS_TRANSITIONS: Dict[OpportunityStatus, FrozenSet[OpportunityStatus]] = {
    S.UNDER_PROCESSING: frozenset({
        S.IN_PSV, S.IN_WEST, S.RESOLVING_UNKNOWN, S.UPCOMING_FRESH_LEAD, S.OPEN, S.DORMANT,
    }),
    S.RESOLVING_UNKNOWN: _REROUTABLE,
    S.UPCOMING_FRESH_LEAD: _REROUTABLE,
    S.IN_PSV: frozenset({S.OPEN, S.DISQUALIFIED, S.UPCOMING_FRESH_LEAD}),
    S.IN_WEST: frozenset({S.OPEN, S.DISQUALIFIED, S.UPCOMING_FRESH_LEAD}),
    S.OPEN: frozenset({S.OPEN, S.WON, S.LOST}),
    # Terminal
    S.WON: frozenset(),
    S.LOST: frozenset(),
    S.DORMANT: frozenset(),
    S.DISQUALIFIED: frozenset(),
}

FILTRATION_TRANSITIONS: Dict[FiltrationStage, FrozenSet[FiltrationStage]] = {
    FiltrationStage.FRESH_LEAD: frozenset({
        FiltrationStage.FOLLOW_UP, FiltrationStage.QUALIFIED, FiltrationStage.DISQUALIFIED,
    }),
    FiltrationStage.FOLLOW_UP: frozenset({
        FiltrationStage.FOLLOW_UP, FiltrationStage.QUALIFIED, FiltrationStage.DISQUALIFIED,
    }),
    FiltrationStage.QUALIFIED: frozenset(),
    FiltrationStage.DISQUALIFIED: frozenset(),
}

CRM_TRANSITIONS: Dict[CrmStage, FrozenSet[CrmStage]] = {
    CrmStage.FRESH_LEAD: frozenset({CrmStage.FOLLOWUP}),
    CrmStage.FOLLOWUP: frozenset({
        CrmStage.FOLLOWUP, CrmStage.WON, CrmStage.LOST, CrmStage.CLOSED_FOR_FUTURE_FOLLOWUP,
    }),
    CrmStage.CLOSED_FOR_FUTURE_FOLLOWUP: frozenset({CrmStage.FOLLOWUP}),
    CrmStage.WON: frozenset(),
    CrmStage.LOST: frozenset(),
}

# Filtration statuses leave for OPEN only once the lead is QUALIFIED
_FILTRATION_STATUSES = frozenset({S.IN_PSV, S.IN_WEST})

# CRM stages that close the opportunity
_CRM_STAGE_STATUS = {
    CrmStage.WON: S.WON,
    CrmStage.LOST: S.LOST,
}


class Transition(NamedTuple):
    opportunity: Opportunity
    activity: Activity


def _flatten(opportunity: Opportunity) -> Dict[str, Any]:
    flat: Dict[str, Any] = {"status": opportunity.status.value}
    if opportunity.phase is not None:
        for key, value in opportunity.phase.model_dump(mode="json").items():
            flat[f"phase.{key}"] = value
    return flat


def diff(before: Opportunity, after: Opportunity) -> List[FieldChange]:
    """Field-level changes between two versions of an opportunity."""
    old, new = _flatten(before), _flatten(after)
    changes = []
    for key in sorted(set(old) | set(new)):
        if old.get(key) != new.get(key):
            changes.append(FieldChange(field=key, old=old.get(key), new=new.get(key)))
    return changes


class LifecycleStateMachine:
    """
    Validates transitions and produces the matching audit entries.

    Stateless; one instance can be shared between processors.
    """

    def can_transition(self, current: OpportunityStatus, target: OpportunityStatus) -> bool:
        return target in STATUS_TRANSITIONS.get(current, frozenset())

    def can_promote(self, opportunity: Opportunity) -> bool:
        """Whether the opportunity may enter the CRM phase (status OPEN)."""
        if not self.can_transition(opportunity.status, S.OPEN):
            return False
        if opportunity.status in _FILTRATION_STATUSES:
            current = opportunity.filtration_status
            return current is not None and current.stage == FiltrationStage.QUALIFIED
        return True

    def ensure_promotable(self, opportunity: Opportunity) -> None:
        """
        Raises:
            InvalidTransitionError: OPEN is unreachable, or the lead is still
                in filtration without being QUALIFIED
        """
        if self.can_promote(opportunity):
            return
        if opportunity.status not in _FILTRATION_STATUSES:
            raise InvalidTransitionError(opportunity.status.value, S.OPEN.value)
        current = opportunity.filtration_status
        stage = current.stage_label if current else "none"
        raise InvalidTransitionError(
            f"{opportunity.status.value}/{stage}", S.OPEN.value, scope="promotion"
        )

    def _record(
        self,
        before: Opportunity,
        after: Opportunity,
        action: str,
        phase: ActivityPhase,
        actor: str
    ) -> Transition:
        activity = Activity(
            opportunity_id=after.id,
            trace_id=after.trace_id,
            phase=phase,
            action=action,
            changes=diff(before, after),
            actor=actor
        )
        logger.info(
            f"Opportunity {after.id} {action}: "
            f"{before.status.value} -> {after.status.value}"
        )
        return Transition(after, activity)

    def transition(
        self,
        opportunity: Opportunity,
        target: OpportunityStatus,
        phase: Optional[OpportunityPhase] = None,
        action: Optional[str] = None,
        activity_phase: Optional[ActivityPhase] = None,
        actor: str = "system"
    ) -> Transition:
        """
        Move to a new top-level status.

        Args:
            phase: Phase data for the target status (required when it changes kind)

        Raises:
            InvalidTransitionError: Target not reachable from the current status,
                or a filtration lead not yet QUALIFIED is moved to OPEN
        """
        if not self.can_transition(opportunity.status, target):
            raise InvalidTransitionError(opportunity.status.value, target.value)
        if target == S.OPEN:
            self.ensure_promotable(opportunity)

        try:
            updated = opportunity.evolve(status=target, phase=phase)
        except ValueError as e:
            raise InvalidTransitionError(
                opportunity.status.value, target.value, scope="phase"
            ) from e

        if activity_phase is None:
            activity_phase = ActivityPhase.CRM if target in PUSHED_STATUSES else ActivityPhase.FILTRATION

        return self._record(
            opportunity, updated, action or f"status:{target.value}", activity_phase, actor
        )

    def advance_filtration(
        self,
        opportunity: Opportunity,
        stage: FiltrationStage,
        reasons: Optional[List[str]] = None,
        actor: str = "system"
    ) -> Transition:
        """
        Move the filtration sub-stage.

        FOLLOW_UP bumps the follow-up number. DISQUALIFIED also moves the
        top-level status to DISQUALIFIED.
        """
        current = opportunity.filtration_status
        if current is None:
            raise InvalidTransitionError(
                opportunity.status.value, stage.value, scope="filtration"
            )
        if stage not in FILTRATION_TRANSITIONS[current.stage]:
            raise InvalidTransitionError(current.stage_label, stage.value, scope="filtration")

        changes: Dict[str, Any] = {"stage": stage}
        if stage == FiltrationStage.FOLLOW_UP:
            changes["follow_up_number"] = current.follow_up_number + 1
        if stage == FiltrationStage.DISQUALIFIED:
            changes["disqualification_reasons"] = list(reasons or [])
        new_phase = current.model_copy(update=changes)

        if stage == FiltrationStage.DISQUALIFIED:
            return self.transition(
                opportunity,
                S.DISQUALIFIED,
                phase=new_phase,
                action="filtration:DISQUALIFIED",
                activity_phase=ActivityPhase.FILTRATION,
                actor=actor
            )

        updated = opportunity.evolve(phase=new_phase)
        return self._record(
            opportunity,
            updated,
            f"filtration:{new_phase.stage_label}",
            ActivityPhase.FILTRATION,
            actor
        )

    def advance_crm(
        self,
        opportunity: Opportunity,
        stage: CrmStage,
        sub_stage: Optional[str] = None,
        actor: str = "system"
    ) -> Transition:
        """
        Move the CRM sub-stage.

        WON and LOST close the opportunity with the matching status.
        """
        current = opportunity.crm_stage_meta
        if current is None:
            raise InvalidTransitionError(opportunity.status.value, stage.value, scope="crm")
        if stage not in CRM_TRANSITIONS[current.stage]:
            raise InvalidTransitionError(current.stage.value, stage.value, scope="crm")

        changes: Dict[str, Any] = {"stage": stage, "sub_stage": sub_stage}
        if stage == CrmStage.FOLLOWUP:
            changes["followup_count"] = current.followup_count + 1
        new_phase = current.model_copy(update=changes)

        target = _CRM_STAGE_STATUS.get(stage, opportunity.status)
        if target != opportunity.status:
            return self.transition(
                opportunity,
                target,
                phase=new_phase,
                action=f"crm:{stage.value}",
                activity_phase=ActivityPhase.CRM,
                actor=actor
            )

        updated = opportunity.evolve(phase=new_phase)
        return self._record(opportunity, updated, f"crm:{stage.value}", ActivityPhase.CRM, actor)

    def reassign(
        self,
        opportunity: Opportunity,
        assignee_id: str,
        actor: str = "system"
    ) -> Transition:
        """Change the assignee of the current phase; status is unchanged."""
        phase = opportunity.phase
        if not isinstance(phase, (FiltrationState, CrmState)) or opportunity.is_terminal:
            raise InvalidTransitionError(
                opportunity.status.value, opportunity.status.value, scope="assignment"
            )

        changes: Dict[str, Any] = {"assignee_id": assignee_id}
        if isinstance(phase, CrmState):
            changes["assigned_at"] = utc_now()
        updated = opportunity.evolve(phase=phase.model_copy(update=changes))
        return self._record(opportunity, updated, "reassigned", ActivityPhase.ASSIGNMENT, actor)

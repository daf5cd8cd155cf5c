"""Domain models"""

# Opportunity lifecycle
from .opportunity import (
    UPCOMING_DESTINATION,
    OpportunityStatus,
    FilterType,
    HandlerProcess,
    FiltrationStage,
    CrmStage,
    FiltrationState,
    CrmState,
    DuplicateState,
    Opportunity,
    PUSHED_STATUSES,
    TERMINAL_STATUSES,
)

from .lead import Lead

from .availability import (
    Availability,
    ProcessDestinationMap,
)

from .activity import (
    ActivityPhase,
    FieldChange,
    Activity,
)

from .followup import (
    FOLLOWUP_SLA,
    FollowUpStatus,
    FollowUp,
)

# Queue payloads
from .messages import (
    LeadData,
    IntakeMessage,
    SyncMessage,
    parse_payload,
)

# Queue envelope
from .queue_message import (
    QueueMessage,
    PendingEntry,
    RetryPolicy,
    SweepAction,
    decide_sweep_action,
    dead_letter_topic,
)

__all__ = [
    # Opportunity lifecycle
    "UPCOMING_DESTINATION",
    "OpportunityStatus",
    "FilterType",
    "HandlerProcess",
    "FiltrationStage",
    "CrmStage",
    "FiltrationState",
    "CrmState",
    "DuplicateState",
    "Opportunity",
    "PUSHED_STATUSES",
    "TERMINAL_STATUSES",
    "Lead",
    "Availability",
    "ProcessDestinationMap",
    "ActivityPhase",
    "FieldChange",
    "Activity",
    "FOLLOWUP_SLA",
    "FollowUpStatus",
    "FollowUp",
    # Queue payloads
    "LeadData",
    "IntakeMessage",
    "SyncMessage",
    "parse_payload",
    # Queue envelope
    "QueueMessage",
    "PendingEntry",
    "RetryPolicy",
    "SweepAction",
    "decide_sweep_action",
    "dead_letter_topic",
]

"""
Opportunity Domain Model
One lead's journey through filtration and the CRM phase.

The phase-specific data is a tagged union: an opportunity carries either a
FiltrationState, a CrmState, a DuplicateState, or nothing yet. Filtration and
CRM metadata can therefore never both be populated, and the external
integration flags (is_pushed, is_duplicate) are derived from the phase rather
than stored next to it.
"""
from pydantic import BaseModel, Field, model_validator
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime
from enum import Enum

from leadflow.utils.clock import utc_now


# Destination value used by intake channels for "interested, not decided yet"
UPCOMING_DESTINATION = "UPCOMING"


class OpportunityStatus(str, Enum):
    """Top-level lifecycle status"""
    UNDER_PROCESSING = "UNDER_PROCESSING"
    IN_PSV = "IN_PSV"
    IN_WEST = "IN_WEST"
    RESOLVING_UNKNOWN = "RESOLVING_UNKNOWN"
    UPCOMING_FRESH_LEAD = "UPCOMING_FRESH_LEAD"
    OPEN = "OPEN"
    WON = "WON"
    LOST = "LOST"
    DORMANT = "DORMANT"              # Duplicate, terminal
    DISQUALIFIED = "DISQUALIFIED"    # Terminal


# Statuses that mean the opportunity has entered the CRM phase
PUSHED_STATUSES = {OpportunityStatus.OPEN, OpportunityStatus.WON, OpportunityStatus.LOST}

TERMINAL_STATUSES = {
    OpportunityStatus.WON,
    OpportunityStatus.LOST,
    OpportunityStatus.DORMANT,
    OpportunityStatus.DISQUALIFIED,
}


class FilterType(str, Enum):
    """Filtration pipeline a lead is classified into"""
    PSV = "PSV"
    WEST = "WEST"
    NO_FILTER = "NO_FILTER"
    UNKNOWN = "UNKNOWN"
    UPCOMING = "UPCOMING"


class HandlerProcess(str, Enum):
    """Process an availability record serves"""
    PSV = "PSV"
    WEST = "WEST"
    SALES = "SALES"


class FiltrationStage(str, Enum):
    FRESH_LEAD = "FRESH_LEAD"
    FOLLOW_UP = "FOLLOW_UP"          # Numbered by FiltrationState.follow_up_number
    QUALIFIED = "QUALIFIED"
    DISQUALIFIED = "DISQUALIFIED"


class CrmStage(str, Enum):
    FRESH_LEAD = "FRESH_LEAD"
    FOLLOWUP = "FOLLOWUP"
    WON = "WON"
    LOST = "LOST"
    CLOSED_FOR_FUTURE_FOLLOWUP = "CLOSED_FOR_FUTURE_FOLLOWUP"


class FiltrationState(BaseModel):
    """Present only while the opportunity is in a filtration phase."""
    kind: Literal["filtration"] = "filtration"
    stage: FiltrationStage = FiltrationStage.FRESH_LEAD
    filter_type: FilterType
    follow_up_number: int = Field(default=0, ge=0)
    disqualification_reasons: List[str] = Field(default_factory=list)
    assignee_id: Optional[str] = None

    @property
    def stage_label(self) -> str:
        if self.stage == FiltrationStage.FOLLOW_UP:
            return f"FOLLOW_UP_{self.follow_up_number}"
        return self.stage.value


class CrmState(BaseModel):
    """Present only once the opportunity has been promoted to the CRM phase."""
    kind: Literal["crm"] = "crm"
    stage: CrmStage = CrmStage.FRESH_LEAD
    sub_stage: Optional[str] = None
    followup_count: int = Field(default=0, ge=0)
    crm_entry_at: Optional[datetime] = None
    assignee_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    crm_lead_id: Optional[str] = None
    crm_opportunity_id: Optional[str] = None


class DuplicateState(BaseModel):
    """Terminal marker for an opportunity that duplicates an active one."""
    kind: Literal["duplicate"] = "duplicate"
    duplicate_of_id: str


OpportunityPhase = Annotated[
    Union[FiltrationState, CrmState, DuplicateState],
    Field(discriminator="kind")
]


class Opportunity(BaseModel):
    """
    Central aggregate for one lead's journey.

    Created by the intake processor, mutated by both processors and by
    operator actions, never physically deleted.
    """

    # Identity
    id: str = Field(..., description="Opportunity id (derived from the intake message)")
    trace_id: str = Field(..., description="Propagated into every record and log line")
    lead_id: Optional[str] = None
    source_message_id: Optional[str] = None

    # Contact
    name: Optional[str] = None
    phone: str = Field(..., min_length=1, description="Primary dedup key")
    email: Optional[str] = None
    destination: Optional[str] = None
    source: Optional[str] = None

    # Lifecycle
    status: OpportunityStatus = OpportunityStatus.UNDER_PROCESSING
    phase: Optional[OpportunityPhase] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_phase_matches_status(self) -> "Opportunity":
        in_crm = isinstance(self.phase, CrmState)
        if in_crm != (self.status in PUSHED_STATUSES):
            raise ValueError(
                f"CRM phase and status {self.status.value} disagree: "
                f"is_pushed requires status in OPEN/WON/LOST"
            )

        is_duplicate = isinstance(self.phase, DuplicateState)
        if is_duplicate != (self.status == OpportunityStatus.DORMANT):
            raise ValueError("Duplicate phase requires status DORMANT and vice versa")

        return self

    # Derived views, named after the persisted document fields

    @property
    def filtration_status(self) -> Optional[FiltrationState]:
        return self.phase if isinstance(self.phase, FiltrationState) else None

    @property
    def crm_stage_meta(self) -> Optional[CrmState]:
        return self.phase if isinstance(self.phase, CrmState) else None

    @property
    def is_duplicate(self) -> bool:
        return isinstance(self.phase, DuplicateState)

    @property
    def duplicate_of_id(self) -> Optional[str]:
        return self.phase.duplicate_of_id if isinstance(self.phase, DuplicateState) else None

    @property
    def is_pushed(self) -> bool:
        """Authoritative marker that the opportunity entered the CRM phase."""
        return isinstance(self.phase, CrmState)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_upcoming(self) -> bool:
        return (self.destination or "").upper() == UPCOMING_DESTINATION

    def evolve(self, **changes: Any) -> "Opportunity":
        """Return a validated copy with the given fields replaced."""
        data = dict(self)
        data.update(changes)
        if "updated_at" not in changes:
            data["updated_at"] = utc_now()
        return type(self).model_validate(data)

    def to_record(self) -> Dict[str, Any]:
        """Serialize for storage."""
        record = self.model_dump(mode="json")
        # Flat flags for store-side querying
        record["is_pushed"] = self.is_pushed
        record["is_duplicate"] = self.is_duplicate
        record["duplicate_of_id"] = self.duplicate_of_id
        return record

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Opportunity":
        """Deserialize from storage, ignoring the derived flat flags."""
        clean = {
            k: v for k, v in data.items()
            if k not in ("is_pushed", "is_duplicate", "duplicate_of_id")
        }
        return cls.model_validate(clean)

    def __repr__(self) -> str:
        return (
            f"Opportunity(id={self.id[:8]}..., status={self.status.value}, "
            f"phone={self.phone}, destination={self.destination})"
        )

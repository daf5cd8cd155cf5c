"""
Activity Model
Immutable audit entries for lifecycle transitions
"""
import uuid
from pydantic import BaseModel, Field
from typing import Any, List, Optional
from datetime import datetime
from enum import Enum

from leadflow.utils.clock import utc_now


class ActivityPhase(str, Enum):
    INTAKE = "intake"
    FILTRATION = "filtration"
    ASSIGNMENT = "assignment"
    CRM = "crm"


class FieldChange(BaseModel):
    """One changed field in a transition"""
    model_config = {"frozen": True}

    field: str
    old: Any = None
    new: Any = None


class Activity(BaseModel):
    """
    Append-only audit log entry.

    Entries are frozen: repositories expose append and read operations only.
    """
    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    opportunity_id: str
    trace_id: Optional[str] = None
    phase: ActivityPhase
    action: str
    changes: List[FieldChange] = Field(default_factory=list)
    actor: str = "system"
    timestamp: datetime = Field(default_factory=utc_now)

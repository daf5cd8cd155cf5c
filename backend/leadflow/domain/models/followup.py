"""
Follow-up Model
Scheduled follow-up tasks created when an opportunity enters the CRM phase
"""
import uuid
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timedelta
from enum import Enum

from leadflow.utils.clock import utc_now


# Fixed SLA between CRM assignment and the first follow-up
FOLLOWUP_SLA = timedelta(hours=24)


class FollowUpStatus(str, Enum):
    OPEN = "OPEN"
    DONE = "DONE"


class FollowUp(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    opportunity_id: str
    trace_id: Optional[str] = None
    assignee_id: Optional[str] = None
    due_at: datetime
    status: FollowUpStatus = FollowUpStatus.OPEN
    created_at: datetime = Field(default_factory=utc_now)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return self.status == FollowUpStatus.OPEN and (now or utc_now()) > self.due_at

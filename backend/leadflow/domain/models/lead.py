"""
Lead Domain Models
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from leadflow.utils.clock import utc_now


class Lead(BaseModel):
    """Contact profile, one per unique phone number"""
    id: str
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None
    active_opportunity_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    def with_opportunity(self, opportunity_id: str) -> "Lead":
        """Attach an opportunity id (no-op if already attached)."""
        if opportunity_id in self.active_opportunity_ids:
            return self
        return self.model_copy(
            update={"active_opportunity_ids": [*self.active_opportunity_ids, opportunity_id]}
        )

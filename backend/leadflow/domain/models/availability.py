"""
Handler Availability Models
Capacity records used by the assignment engine, and the destination map
that decides which filtration process a lead enters
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from leadflow.domain.models.opportunity import FilterType, HandlerProcess
from leadflow.utils.clock import utc_now


class Availability(BaseModel):
    """
    One person/team's current eligibility to receive new work.

    lead_count is rolling assignment load: it only goes up through the
    atomic assignment and only comes down through explicit reassignment or
    removal, never when an opportunity is won or lost.
    """

    id: str
    name: Optional[str] = None
    process: HandlerProcess
    destinations: List[str] = Field(default_factory=list)
    source: List[str] = Field(default_factory=list, description="Platform affinity (optional)")
    is_available: bool = True
    is_deleted: bool = False
    lead_count: int = Field(default=0, ge=0)
    total_count: int = Field(default=0, ge=0)
    seq: int = Field(default=0, description="Insertion order, breaks load ties")
    crm_owner_id: Optional[str] = Field(default=None, description="Owner id of this handler in the external CRM")
    created_at: datetime = Field(default_factory=utc_now)

    def serves(self, process: HandlerProcess, destination: Optional[str]) -> bool:
        """True if this record can take work for the process + destination."""
        if not self.is_available or self.is_deleted:
            return False
        if self.process != process:
            return False
        wanted = (destination or "").casefold()
        return any(d.casefold() == wanted for d in self.destinations)

    def has_source(self, source: Optional[str]) -> bool:
        if not source:
            return False
        wanted = source.casefold()
        return any(s.casefold() == wanted for s in self.source)


class ProcessDestinationMap(BaseModel):
    """
    Per-process destination eligibility and traffic split.

    When several processes serve the same destination, traffic is split in
    proportion to load_share using the running counter.
    """

    id: str
    process: FilterType
    destinations: List[str] = Field(default_factory=list)
    load_share: float = Field(default=1.0, gt=0)
    counter: int = Field(default=0, ge=0)
    is_active: bool = True

    def covers(self, destination: Optional[str]) -> bool:
        if not self.is_active or not destination:
            return False
        wanted = destination.casefold()
        return any(d.casefold() == wanted for d in self.destinations)

    @property
    def weighted_load(self) -> float:
        return self.counter / self.load_share

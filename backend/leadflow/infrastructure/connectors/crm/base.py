"""
CRM Provider Base Class
Abstract interface for the external CRM the sync processor pushes into.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class CRMLead(BaseModel):
    """A lead (contact) record in the external CRM."""
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = {"extra": "allow"}


class CRMOpportunity(BaseModel):
    """An opportunity (deal) record in the external CRM."""
    id: Optional[str] = None
    name: str = ""
    stage: Optional[str] = None
    reference: Optional[str] = Field(default=None, description="Our trace id")
    lead_id: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class CRMProvider(ABC):
    """
    Abstract base class for CRM providers.

    Implementations raise TransientInfraError when the CRM is unreachable or
    answers with a retryable status, and CrmRejectedError when it rejects the
    request as invalid. The sync processor makes one attempt per
    delivery and leaves retries to the queue.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def check_lead_exists(
        self,
        phone: Optional[str],
        email: Optional[str] = None
    ) -> Optional[CRMLead]:
        """Find an existing CRM lead by phone, then email."""
        pass

    @abstractmethod
    async def create_lead(
        self,
        name: Optional[str],
        phone: Optional[str],
        email: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None
    ) -> CRMLead:
        pass

    @abstractmethod
    async def find_opportunity_by_reference(self, reference: str) -> Optional[CRMOpportunity]:
        """Look up an opportunity previously created with this reference."""
        pass

    @abstractmethod
    async def create_opportunity(
        self,
        name: str,
        lead_id: str,
        reference: str,
        owner_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None
    ) -> CRMOpportunity:
        pass

    async def close(self) -> None:
        """Release provider resources."""
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(provider={self.provider_name})>"

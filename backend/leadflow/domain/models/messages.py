"""
Queue Payload Models
Wire shapes of the intake and sync topics (camelCase on the wire)
"""
from pydantic import BaseModel, Field, ValidationError, field_validator
from typing import Any, Dict, Optional, Type, TypeVar

from leadflow.core.errors import MalformedMessageError

T = TypeVar("T", bound=BaseModel)


class LeadData(BaseModel):
    model_config = {"populate_by_name": True, "extra": "allow"}

    name: Optional[str] = None
    phone: str = Field(..., min_length=1)
    email: Optional[str] = None
    destination: Optional[str] = None
    upcoming: bool = False

    @field_validator("phone")
    @classmethod
    def _strip_phone(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("phone must not be blank")
        return value

    @field_validator("destination")
    @classmethod
    def _blank_destination_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()


class IntakeMessage(BaseModel):
    """Payload published by intake channels."""
    model_config = {"populate_by_name": True}

    source: Optional[str] = None
    lead_data: LeadData = Field(..., alias="leadData")


class SyncMessage(BaseModel):
    """Payload asking the CRM sync processor to promote an opportunity."""
    model_config = {"populate_by_name": True}

    opportunity_id: str = Field(..., alias="opportunityId", min_length=1)
    trace_id: Optional[str] = Field(default=None, alias="traceId")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def parse_payload(model: Type[T], payload: Dict[str, Any]) -> T:
    """
    Validate a queue payload.

    Raises:
        MalformedMessageError: payload does not match the model
    """
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid {model.__name__}: {e.errors()}") from e

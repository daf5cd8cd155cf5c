"""
Queue Message Models
Envelope and pending-entry records owned by the durable queue
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum


class QueueMessage(BaseModel):
    """
    A message delivered to a consumer group.

    Consumers only read the envelope. Delivery metadata is maintained by the
    queue store; a consumer either acknowledges the message or lets it go
    stale so the sweep can reclaim it.
    """

    id: str = Field(..., description="Monotonic store-assigned message id")
    topic: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    delivery_count: int = Field(default=1, ge=1)
    first_delivered_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return (
            f"QueueMessage(id={self.id}, topic={self.topic}, "
            f"deliveries={self.delivery_count})"
        )


class PendingEntry(BaseModel):
    """A delivered but not yet acknowledged message in a consumer group."""
    message_id: str
    consumer: str
    delivery_count: int
    ms_since_delivery: int


class RetryPolicy(BaseModel):
    """Reclaim / dead-letter thresholds for one topic + consumer group."""
    max_retries: int = Field(default=5, ge=1)
    claim_timeout_ms: int = Field(default=60_000, ge=0)


class SweepAction(str, Enum):
    """What the pending sweep does with a stale entry"""
    SKIP = "skip"                  # Still inside the claim timeout
    RECLAIM = "reclaim"
    DEAD_LETTER = "dead_letter"


def decide_sweep_action(entry: PendingEntry, policy: RetryPolicy) -> SweepAction:
    """
    Apply the retry policy to a pending entry.

    Entries below the claim timeout are assumed to still be in flight.
    """
    if entry.ms_since_delivery < policy.claim_timeout_ms:
        return SweepAction.SKIP

    if entry.delivery_count >= policy.max_retries:
        return SweepAction.DEAD_LETTER

    return SweepAction.RECLAIM


def dead_letter_topic(topic: str, group: str) -> str:
    """Deterministic dead-letter topic name for a (topic, group) pair."""
    return f"{topic}.dlq.{group}"

"""
Durable Queue Interface
Contract for a partitioned, consumer-group based append log.

Any store that satisfies this contract can back the pipeline: the Redis
Streams store is used in deployment, the in-memory store in tests.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from leadflow.domain.models.queue_message import QueueMessage, PendingEntry


class DurableQueue(ABC):
    """Abstract base class for durable queue stores"""

    @abstractmethod
    async def publish(self, topic: str, payload: Dict[str, Any]) -> str:
        """
        Append a message to a topic.

        Never waits for consumers.

        Returns:
            message_id: Store-assigned monotonic id
        """
        pass

    @abstractmethod
    async def ensure_group(self, topic: str, group: str) -> None:
        """
        Create a consumer group cursor at "now" (idempotent).

        Messages published before the group existed are not visible to it.
        """
        pass

    @abstractmethod
    async def fetch_next(
        self,
        topic: str,
        group: str,
        consumer_id: str
    ) -> Optional[QueueMessage]:
        """
        Deliver the next undelivered message to a consumer.

        The message becomes pending against consumer_id until acknowledged.

        Returns:
            QueueMessage, or None when no new message exists
        """
        pass

    @abstractmethod
    async def acknowledge(self, topic: str, group: str, message_id: str) -> None:
        """Remove a message from the group's pending set (idempotent)."""
        pass

    @abstractmethod
    async def list_stale_pending(self, topic: str, group: str) -> List[PendingEntry]:
        """List pending entries that have not been acknowledged."""
        pass

    @abstractmethod
    async def reclaim(
        self,
        topic: str,
        group: str,
        consumer_id: str,
        message_id: str,
        min_idle_ms: int = 0
    ) -> Optional[QueueMessage]:
        """
        Atomically move a pending entry to another consumer.

        Increments the delivery count. Returns None when the entry is gone or
        has been idle for less than min_idle_ms (another sweeper got it).
        """
        pass

    @abstractmethod
    async def dead_letter(
        self,
        topic: str,
        group: str,
        message: QueueMessage,
        reason: str = ""
    ) -> Optional[str]:
        """
        Append the message to the (topic, group) dead-letter topic and
        acknowledge the original, as one atomic step.

        Does nothing when the entry is no longer pending in the group
        (already acknowledged or dead-lettered).

        Returns:
            Id of the dead-letter entry, or None if nothing was written
        """
        pass

    @abstractmethod
    async def read(self, topic: str, message_id: str) -> Optional[QueueMessage]:
        """Read a single message by id without changing delivery state."""
        pass

    @abstractmethod
    async def stats(self, topic: str, group: str) -> Dict[str, int]:
        """Stream length, pending count and dead-letter length for a group."""
        pass

    async def close(self) -> None:
        """Release store connections."""
        pass

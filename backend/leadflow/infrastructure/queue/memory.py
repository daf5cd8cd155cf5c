"""
In-Memory Durable Queue
Process-local store that satisfies the DurableQueue contract.

Mirrors the Redis Streams semantics the pipeline relies on: per-topic
append-only entries with monotonic ids, group cursors that start at "now",
a pending-entries list per group with (consumer, delivery_count,
last_delivered_at), min-idle claims and atomic dead-lettering.
"""
import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime

from leadflow.core.errors import QueueGroupMissingError
from leadflow.domain.interfaces.durable_queue import DurableQueue
from leadflow.domain.models.queue_message import QueueMessage, PendingEntry, dead_letter_topic
from leadflow.utils.clock import Clock, utc_now, ms_between

logger = logging.getLogger(__name__)


@dataclass
class _PendingRecord:
    consumer: str
    delivery_count: int
    last_delivered_at: datetime
    first_delivered_at: datetime


@dataclass
class _GroupState:
    cursor: int
    pending: Dict[str, _PendingRecord]


class InMemoryQueue(DurableQueue):
    """
    In-memory durable queue.

    Args:
        clock: Time source, injectable so tests can age pending entries
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._streams: Dict[str, List[Tuple[str, Dict[str, Any]]]] = {}
        self._payloads: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._groups: Dict[Tuple[str, str], _GroupState] = {}
        self._seq = 0
        self._lock = asyncio.Lock()

    def _next_id(self) -> str:
        self._seq += 1
        millis = int(self._clock().timestamp() * 1000)
        return f"{millis}-{self._seq}"

    def _append(self, topic: str, payload: Dict[str, Any]) -> str:
        message_id = self._next_id()
        stored = copy.deepcopy(payload)
        self._streams.setdefault(topic, []).append((message_id, stored))
        self._payloads.setdefault(topic, {})[message_id] = stored
        return message_id

    def _lookup(self, topic: str, message_id: str) -> Optional[Dict[str, Any]]:
        return self._payloads.get(topic, {}).get(message_id)

    def _group(self, topic: str, group: str) -> _GroupState:
        state = self._groups.get((topic, group))
        if state is None:
            raise QueueGroupMissingError(topic, group)
        return state

    async def publish(self, topic: str, payload: Dict[str, Any]) -> str:
        async with self._lock:
            message_id = self._append(topic, payload)
        logger.debug(f"Published {message_id} to {topic}")
        return message_id

    async def ensure_group(self, topic: str, group: str) -> None:
        async with self._lock:
            if (topic, group) in self._groups:
                return
            stream = self._streams.setdefault(topic, [])
            self._groups[(topic, group)] = _GroupState(cursor=len(stream), pending={})
        logger.info(f"Created consumer group {group} on {topic}")

    async def fetch_next(
        self,
        topic: str,
        group: str,
        consumer_id: str
    ) -> Optional[QueueMessage]:
        async with self._lock:
            state = self._group(topic, group)
            stream = self._streams.get(topic, [])
            if state.cursor >= len(stream):
                return None

            message_id, payload = stream[state.cursor]
            state.cursor += 1
            now = self._clock()
            state.pending[message_id] = _PendingRecord(
                consumer=consumer_id,
                delivery_count=1,
                last_delivered_at=now,
                first_delivered_at=now
            )
            return QueueMessage(
                id=message_id,
                topic=topic,
                payload=copy.deepcopy(payload),
                delivery_count=1,
                first_delivered_at=now
            )

    async def acknowledge(self, topic: str, group: str, message_id: str) -> None:
        async with self._lock:
            self._group(topic, group).pending.pop(message_id, None)

    async def list_stale_pending(self, topic: str, group: str) -> List[PendingEntry]:
        async with self._lock:
            state = self._group(topic, group)
            now = self._clock()
            return [
                PendingEntry(
                    message_id=message_id,
                    consumer=record.consumer,
                    delivery_count=record.delivery_count,
                    ms_since_delivery=ms_between(record.last_delivered_at, now)
                )
                for message_id, record in state.pending.items()
            ]

    async def reclaim(
        self,
        topic: str,
        group: str,
        consumer_id: str,
        message_id: str,
        min_idle_ms: int = 0
    ) -> Optional[QueueMessage]:
        async with self._lock:
            state = self._group(topic, group)
            record = state.pending.get(message_id)
            if record is None:
                return None

            now = self._clock()
            if ms_between(record.last_delivered_at, now) < min_idle_ms:
                return None

            payload = self._lookup(topic, message_id)
            if payload is None:
                state.pending.pop(message_id, None)
                return None

            record.consumer = consumer_id
            record.delivery_count += 1
            record.last_delivered_at = now
            return QueueMessage(
                id=message_id,
                topic=topic,
                payload=copy.deepcopy(payload),
                delivery_count=record.delivery_count,
                first_delivered_at=record.first_delivered_at
            )

    async def dead_letter(
        self,
        topic: str,
        group: str,
        message: QueueMessage,
        reason: str = ""
    ) -> Optional[str]:
        async with self._lock:
            state = self._group(topic, group)
            if state.pending.pop(message.id, None) is None:
                logger.info(f"Skipped dead-letter of {message.id} on {topic}/{group}: no longer pending")
                return None

            dlq_id = self._append(dead_letter_topic(topic, group), {
                "original_topic": topic,
                "group": group,
                "message_id": message.id,
                "delivery_count": message.delivery_count,
                "reason": reason,
                "dead_lettered_at": self._clock().isoformat(),
                "payload": message.payload,
            })

        logger.warning(f"Dead-lettered {message.id} from {topic}/{group}: {reason}")
        return dlq_id

    async def read(self, topic: str, message_id: str) -> Optional[QueueMessage]:
        async with self._lock:
            payload = self._lookup(topic, message_id)
        if payload is None:
            return None
        return QueueMessage(id=message_id, topic=topic, payload=copy.deepcopy(payload))

    async def stats(self, topic: str, group: str) -> Dict[str, int]:
        async with self._lock:
            state = self._groups.get((topic, group))
            return {
                "length": len(self._streams.get(topic, [])),
                "pending": len(state.pending) if state else 0,
                "dead_letters": len(self._streams.get(dead_letter_topic(topic, group), [])),
            }

    def messages(self, topic: str) -> List[Dict[str, Any]]:
        """All payloads on a topic, oldest first (inspection helper)."""
        return [copy.deepcopy(payload) for _, payload in self._streams.get(topic, [])]

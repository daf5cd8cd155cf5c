"""
Redis Streams Durable Queue
Consumer-group queue on Redis Streams.

Key layout:
- leadflow:stream:{topic}               - Stream of entries, one "payload" field (JSON)
- leadflow:stream:{topic}.dlq.{group}   - Dead-letter stream for a (topic, group)

Consumer-group cursors and the pending-entries list (consumer, delivery
count, idle time) are kept by Redis itself (XGROUP / XREADGROUP / XPENDING).
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, TimeoutError as RedisTimeoutError

from leadflow.core.config import get_settings
from leadflow.core.errors import QueueGroupMissingError, TransientInfraError
from leadflow.domain.interfaces.durable_queue import DurableQueue
from leadflow.domain.models.queue_message import QueueMessage, PendingEntry, dead_letter_topic
from leadflow.utils.clock import utc_now

logger = logging.getLogger(__name__)


class RedisStreamQueue(DurableQueue):
    """
    DurableQueue backed by Redis Streams.

    Pending entries are enumerated in pages of PENDING_PAGE_SIZE. Claims use
    XCLAIM with a min-idle-time, so two sweepers racing for the same entry
    cannot both win. Dead-lettering is a server-side script that acknowledges
    and appends atomically, and is a no-op for an entry no longer pending.
    """

    STREAM_PREFIX = "leadflow:stream:"
    PAYLOAD_FIELD = "payload"
    PENDING_PAGE_SIZE = 100

    # XACK then XADD in one script: the dead-letter entry is written only by
    # the caller whose XACK removed the entry from the pending list
    _DEAD_LETTER_LUA = """
    local acked = redis.call('XACK', KEYS[1], ARGV[1], ARGV[2])
    if acked == 0 then
        return false
    end
    return redis.call('XADD', KEYS[2], '*', ARGV[3], ARGV[4])
    """

    def __init__(self, redis_client=None, redis_url: Optional[str] = None):
        """
        Initialize queue store.

        Args:
            redis_client: Optional pre-configured Redis client
            redis_url: Connection URL used when no client is given
        """
        self._redis = redis_client
        self._redis_url = redis_url
        self._initialized = redis_client is not None

    async def initialize(self) -> None:
        """Initialize Redis connection if not provided."""
        if self._initialized:
            return

        redis_url = self._redis_url or get_settings().redis_url
        try:
            self._redis = redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._redis.ping()
            self._initialized = True
            logger.info(f"RedisStreamQueue connected to Redis: {redis_url}")
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise TransientInfraError(f"Redis unreachable: {e}") from e

    def _key(self, topic: str) -> str:
        return f"{self.STREAM_PREFIX}{topic}"

    def _encode(self, payload: Dict[str, Any]) -> Dict[str, str]:
        return {self.PAYLOAD_FIELD: json.dumps(payload, default=str)}

    def _decode(self, fields: Optional[Dict[str, str]]) -> Optional[Dict[str, Any]]:
        if not fields or self.PAYLOAD_FIELD not in fields:
            return None
        return json.loads(fields[self.PAYLOAD_FIELD])

    async def _call(self, coro):
        """Await a Redis command, mapping connectivity errors."""
        try:
            return await coro
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Redis command failed: {e}")
            raise TransientInfraError(f"Redis unreachable: {e}") from e

    @staticmethod
    def _raise_if_nogroup(error: ResponseError, topic: str, group: str) -> None:
        if "NOGROUP" in str(error):
            raise QueueGroupMissingError(topic, group) from error

    async def publish(self, topic: str, payload: Dict[str, Any]) -> str:
        if not self._initialized:
            await self.initialize()

        message_id = await self._call(self._redis.xadd(self._key(topic), self._encode(payload)))
        logger.debug(f"Published {message_id} to {topic}")
        return message_id

    async def ensure_group(self, topic: str, group: str) -> None:
        if not self._initialized:
            await self.initialize()

        try:
            await self._call(
                self._redis.xgroup_create(self._key(topic), group, id="$", mkstream=True)
            )
            logger.info(f"Created consumer group {group} on {topic}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug(f"Consumer group {group} already exists on {topic}")

    async def fetch_next(
        self,
        topic: str,
        group: str,
        consumer_id: str
    ) -> Optional[QueueMessage]:
        if not self._initialized:
            await self.initialize()

        try:
            response = await self._call(self._redis.xreadgroup(
                group,
                consumer_id,
                streams={self._key(topic): ">"},
                count=1
            ))
        except ResponseError as e:
            self._raise_if_nogroup(e, topic, group)
            raise

        entry = self._first_entry(response)
        if entry is None:
            return None

        message_id, fields = entry
        return QueueMessage(
            id=message_id,
            topic=topic,
            payload=self._decode(fields) or {},
            delivery_count=1,
            first_delivered_at=utc_now()
        )

    @staticmethod
    def _first_entry(response: Any) -> Optional[Tuple[str, Dict[str, str]]]:
        """Extract the first (id, fields) pair from an XREADGROUP reply."""
        if not response:
            return None
        # RESP2: [[stream, [(id, fields), ...]]]; RESP3: {stream: [[(id, fields), ...]]}
        if isinstance(response, dict):
            streams = list(response.values())
            entries = streams[0][0] if streams and streams[0] else []
        else:
            entries = response[0][1]
        if not entries:
            return None
        message_id, fields = entries[0]
        return message_id, fields

    async def acknowledge(self, topic: str, group: str, message_id: str) -> None:
        if not self._initialized:
            await self.initialize()

        await self._call(self._redis.xack(self._key(topic), group, message_id))

    async def list_stale_pending(self, topic: str, group: str) -> List[PendingEntry]:
        if not self._initialized:
            await self.initialize()

        entries: List[PendingEntry] = []
        start = "-"
        while True:
            try:
                page = await self._call(self._redis.xpending_range(
                    self._key(topic),
                    group,
                    min=start,
                    max="+",
                    count=self.PENDING_PAGE_SIZE
                ))
            except ResponseError as e:
                self._raise_if_nogroup(e, topic, group)
                raise

            for item in page:
                entries.append(PendingEntry(
                    message_id=item["message_id"],
                    consumer=item["consumer"],
                    delivery_count=int(item["times_delivered"]),
                    ms_since_delivery=int(item["time_since_delivered"])
                ))

            if len(page) < self.PENDING_PAGE_SIZE:
                break
            # Exclusive start for the next page
            start = f"({page[-1]['message_id']}"

        return entries

    async def _delivery_count(self, topic: str, group: str, message_id: str) -> int:
        page = await self._call(self._redis.xpending_range(
            self._key(topic), group, min=message_id, max=message_id, count=1
        ))
        if page:
            return int(page[0]["times_delivered"])
        return 1

    async def reclaim(
        self,
        topic: str,
        group: str,
        consumer_id: str,
        message_id: str,
        min_idle_ms: int = 0
    ) -> Optional[QueueMessage]:
        if not self._initialized:
            await self.initialize()

        claimed = await self._call(self._redis.xclaim(
            self._key(topic),
            group,
            consumer_id,
            min_idle_time=min_idle_ms,
            message_ids=[message_id]
        ))
        if not claimed:
            return None

        claimed_id, fields = claimed[0]
        payload = self._decode(fields)
        if payload is None:
            # Entry was trimmed from the stream; nothing left to process
            await self.acknowledge(topic, group, claimed_id)
            logger.warning(f"Dropped pending entry {claimed_id} on {topic}: payload missing")
            return None

        delivery_count = await self._delivery_count(topic, group, claimed_id)
        return QueueMessage(
            id=claimed_id,
            topic=topic,
            payload=payload,
            delivery_count=delivery_count
        )

    async def dead_letter(
        self,
        topic: str,
        group: str,
        message: QueueMessage,
        reason: str = ""
    ) -> Optional[str]:
        if not self._initialized:
            await self.initialize()

        envelope = {
            "original_topic": topic,
            "group": group,
            "message_id": message.id,
            "delivery_count": message.delivery_count,
            "reason": reason,
            "dead_lettered_at": utc_now().isoformat(),
            "payload": message.payload,
        }

        dlq_id = await self._call(self._redis.eval(
            self._DEAD_LETTER_LUA,
            2,
            self._key(topic),
            self._key(dead_letter_topic(topic, group)),
            group,
            message.id,
            self.PAYLOAD_FIELD,
            json.dumps(envelope, default=str)
        ))
        if not dlq_id:
            logger.info(f"Skipped dead-letter of {message.id} on {topic}/{group}: no longer pending")
            return None

        logger.warning(f"Dead-lettered {message.id} from {topic}/{group}: {reason}")
        return dlq_id

    async def read(self, topic: str, message_id: str) -> Optional[QueueMessage]:
        if not self._initialized:
            await self.initialize()

        rows = await self._call(
            self._redis.xrange(self._key(topic), min=message_id, max=message_id, count=1)
        )
        if not rows:
            return None
        entry_id, fields = rows[0]
        payload = self._decode(fields)
        if payload is None:
            return None
        return QueueMessage(id=entry_id, topic=topic, payload=payload)

    async def stats(self, topic: str, group: str) -> Dict[str, int]:
        if not self._initialized:
            await self.initialize()

        length = await self._call(self._redis.xlen(self._key(topic)))
        dead_letters = await self._call(
            self._redis.xlen(self._key(dead_letter_topic(topic, group)))
        )
        try:
            summary = await self._call(self._redis.xpending(self._key(topic), group))
            pending = int(summary.get("pending", 0)) if summary else 0
        except ResponseError as e:
            if "NOGROUP" not in str(e):
                raise
            pending = 0

        return {"length": int(length), "pending": pending, "dead_letters": int(dead_letters)}

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._initialized = False

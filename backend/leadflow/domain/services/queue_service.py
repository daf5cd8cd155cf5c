"""
Queue Service
Retry-policy driven recovery of stale pending entries.

Each consumer worker runs a sweep on a timer:
- entries idle for less than claim_timeout_ms are left alone (still in flight)
- entries below max_retries are reclaimed to the sweeping worker
- entries at max_retries are claimed, then moved to the dead-letter topic

Reclaim uses the store's min-idle claim, so several workers may sweep the
same group concurrently: only one of them wins each entry, and an entry
acknowledged by its slow original consumer is never dead-lettered.
"""
import logging
from typing import List, Optional

from leadflow.core.config import ConfigManager
from leadflow.domain.interfaces.durable_queue import DurableQueue
from leadflow.domain.models.queue_message import (
    QueueMessage,
    PendingEntry,
    RetryPolicy,
    SweepAction,
    decide_sweep_action,
)

logger = logging.getLogger(__name__)


class PendingSweeper:
    """
    Sweeps one (topic, group) pair.

    Usage:
        sweeper = PendingSweeper(queue, "leads.intake", "intake-processors")
        for message in await sweeper.sweep("worker-1"):
            await handle(message)
    """

    def __init__(
        self,
        queue: DurableQueue,
        topic: str,
        group: str,
        policy: Optional[RetryPolicy] = None,
        config: Optional[ConfigManager] = None
    ):
        self.queue = queue
        self.topic = topic
        self.group = group
        if policy is None:
            policy = (config or ConfigManager()).retry_policy(topic, group)
        self.policy = policy

        self._reclaimed = 0
        self._dead_lettered = 0

    async def sweep(self, consumer_id: str) -> List[QueueMessage]:
        """
        Run one sweep on behalf of consumer_id.

        Returns:
            Messages now pending against consumer_id, for the caller to process
        """
        pending = await self.queue.list_stale_pending(self.topic, self.group)
        reclaimed: List[QueueMessage] = []

        for entry in pending:
            action = decide_sweep_action(entry, self.policy)

            if action == SweepAction.SKIP:
                continue

            if action == SweepAction.DEAD_LETTER:
                await self._dead_letter(entry, consumer_id)
                continue

            message = await self.queue.reclaim(
                self.topic,
                self.group,
                consumer_id,
                entry.message_id,
                min_idle_ms=self.policy.claim_timeout_ms
            )
            if message is None:
                logger.debug(f"Entry {entry.message_id} already claimed by another sweeper")
                continue

            self._reclaimed += 1
            logger.info(
                f"Reclaimed {message.id} on {self.topic}/{self.group} from "
                f"{entry.consumer} (delivery {message.delivery_count})"
            )
            reclaimed.append(message)

        return reclaimed

    async def _dead_letter(self, entry: PendingEntry, consumer_id: str) -> None:
        # Claim first: only the sweeper that wins the min-idle claim may
        # dead-letter, and an entry acknowledged meanwhile is not claimable
        message = await self.queue.reclaim(
            self.topic,
            self.group,
            consumer_id,
            entry.message_id,
            min_idle_ms=self.policy.claim_timeout_ms
        )
        if message is None:
            logger.debug(
                f"Entry {entry.message_id} was settled or claimed elsewhere, not dead-lettering"
            )
            return

        message = message.model_copy(update={"delivery_count": entry.delivery_count})
        dlq_id = await self.queue.dead_letter(
            self.topic,
            self.group,
            message,
            reason=f"max retries exceeded ({entry.delivery_count}/{self.policy.max_retries})"
        )
        if dlq_id is None:
            logger.info(f"Entry {entry.message_id} was acknowledged before it could be dead-lettered")
            return
        self._dead_lettered += 1

    def get_stats(self) -> dict:
        return {
            "topic": self.topic,
            "group": self.group,
            "reclaimed": self._reclaimed,
            "dead_lettered": self._dead_lettered,
        }

"""
Queue Consumer Worker
Generic at-least-once consumer loop for one (topic, consumer group).

Per message:
- handler returns           -> acknowledge
- DataIntegrityError        -> dead-letter immediately
- any other exception       -> logged, left pending; the sweep reclaims it
                               after claim_timeout_ms and dead-letters it
                               once max_retries deliveries are used up

Each worker also sweeps the group's stale pending entries every
sweep_interval seconds and processes what it reclaimed itself.
"""
import asyncio
import logging
import os
import signal
import socket
import time
from typing import Any, Awaitable, Callable, List, Optional

from leadflow.core.errors import DataIntegrityError
from leadflow.core.logging import trace_context
from leadflow.domain.interfaces.durable_queue import DurableQueue
from leadflow.domain.models.queue_message import QueueMessage
from leadflow.domain.services.queue_service import PendingSweeper

logger = logging.getLogger(__name__)

MessageHandler = Callable[[QueueMessage], Awaitable[Any]]


def default_consumer_id(prefix: str, index: int = 0) -> str:
    """Unique consumer name per process/task: {prefix}-{host}-{pid}-{index}"""
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}-{index}"


class QueueConsumerWorker:
    """
    Pulls one message at a time and hands it to a processor.

    stop() is cooperative: the loop exits after the in-flight message has
    been handled and acknowledged (or left pending), never in the middle.
    """

    # Worker configuration
    POLL_INTERVAL = 1.0     # Seconds between fetches when the topic is empty
    SWEEP_INTERVAL = 30.0   # Seconds between pending-entry sweeps
    MAX_CONSECUTIVE_ERRORS = 10

    def __init__(
        self,
        queue: DurableQueue,
        topic: str,
        group: str,
        consumer_id: str,
        handler: MessageHandler,
        sweeper: Optional[PendingSweeper] = None,
        poll_interval: Optional[float] = None,
        sweep_interval: Optional[float] = None
    ):
        self.queue = queue
        self.topic = topic
        self.group = group
        self.consumer_id = consumer_id
        self.handler = handler
        self.sweeper = sweeper or PendingSweeper(queue, topic, group)
        self.poll_interval = self.POLL_INTERVAL if poll_interval is None else poll_interval
        self.sweep_interval = self.SWEEP_INTERVAL if sweep_interval is None else sweep_interval

        self.running = False
        self._last_sweep: Optional[float] = None

        # Stats
        self._messages_processed = 0
        self._messages_failed = 0
        self._messages_dead_lettered = 0

    async def run(self) -> None:
        """
        Main worker loop.

        Continuously:
        1. Sweep stale pending entries (periodically) and process reclaimed ones
        2. Fetch and process the next new message
        3. Sleep poll_interval when there is nothing to do
        """
        await self.queue.ensure_group(self.topic, self.group)

        self.running = True
        consecutive_errors = 0

        logger.info(f"Consumer {self.consumer_id} started on {self.topic}/{self.group}")

        while self.running:
            try:
                if self._sweep_due():
                    await self.sweep_once()

                if not self.running:
                    break

                message = await self.queue.fetch_next(self.topic, self.group, self.consumer_id)
                if message:
                    await self.process_message(message)
                else:
                    await asyncio.sleep(self.poll_interval)

                consecutive_errors = 0

            except asyncio.CancelledError:
                logger.info(f"Consumer {self.consumer_id} received cancellation signal")
                break
            except Exception as e:
                consecutive_errors += 1
                logger.error(
                    f"Consumer {self.consumer_id} error ({consecutive_errors}): {e}",
                    exc_info=True
                )

                if consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Too many consecutive errors, stopping worker")
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

        self.running = False
        logger.info(
            f"Consumer {self.consumer_id} stopped. "
            f"Processed: {self._messages_processed}, Failed: {self._messages_failed}, "
            f"Dead-lettered: {self._messages_dead_lettered}"
        )

    def _sweep_due(self) -> bool:
        if self._last_sweep is None:
            return True
        return time.monotonic() - self._last_sweep >= self.sweep_interval

    async def sweep_once(self) -> int:
        """Reclaim stale entries to this consumer and process them."""
        self._last_sweep = time.monotonic()
        reclaimed = await self.sweeper.sweep(self.consumer_id)

        handled = 0
        for message in reclaimed:
            if not self.running:
                # Left pending against us; the next sweep anywhere picks it up
                break
            await self.process_message(message)
            handled += 1
        return handled

    async def process_message(self, message: QueueMessage) -> bool:
        """
        Handle one message and settle it.

        Returns:
            True if the message was acknowledged
        """
        with trace_context(message.payload.get("traceId")):
            logger.info(
                f"Processing {message.id} from {self.topic} (delivery {message.delivery_count})"
            )

            try:
                await self.handler(message)

            except DataIntegrityError as e:
                self._messages_failed += 1
                logger.error(f"Message {message.id} cannot be processed: {e.message}")
                dlq_id = await self.queue.dead_letter(
                    self.topic,
                    self.group,
                    message,
                    reason=f"{type(e).__name__}: {e.message}"
                )
                if dlq_id is not None:
                    self._messages_dead_lettered += 1
                return False

            except Exception as e:
                # Transient or unexpected: stays pending for the sweep to retry
                self._messages_failed += 1
                logger.error(
                    f"Message {message.id} failed on delivery {message.delivery_count}, "
                    f"left pending: {e}",
                    exc_info=True
                )
                return False

            await self.queue.acknowledge(self.topic, self.group, message.id)
            self._messages_processed += 1
            return True

    def stop(self) -> None:
        """Request a cooperative stop."""
        if self.running:
            logger.info(f"Stopping consumer {self.consumer_id}")
        self.running = False

    def get_stats(self) -> dict:
        """Get worker statistics."""
        return {
            "consumer_id": self.consumer_id,
            "topic": self.topic,
            "group": self.group,
            "running": self.running,
            "messages_processed": self._messages_processed,
            "messages_failed": self._messages_failed,
            "messages_dead_lettered": self._messages_dead_lettered,
            "sweeper": self.sweeper.get_stats(),
        }


def install_signal_handlers(stop: Callable[[], None]) -> None:
    """Route SIGTERM/SIGINT to a cooperative stop."""
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


async def run_workers(workers: List[QueueConsumerWorker]) -> None:
    """Run consumer workers as tasks of one process until all have stopped."""

    def stop_all():
        for worker in workers:
            worker.stop()

    install_signal_handlers(stop_all)
    await asyncio.gather(*(worker.run() for worker in workers))

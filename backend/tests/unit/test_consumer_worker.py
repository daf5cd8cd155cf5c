"""
Unit tests for the generic queue consumer worker
"""
import os
import pytest
from unittest.mock import AsyncMock

from leadflow.core.errors import MalformedMessageError, TransientInfraError
from leadflow.core.logging import get_trace_id
from leadflow.domain.models.queue_message import RetryPolicy, dead_letter_topic
from leadflow.domain.services.queue_service import PendingSweeper
from leadflow.infrastructure.queue.memory import InMemoryQueue
from leadflow.workers.consumer_worker import QueueConsumerWorker, default_consumer_id

from factories import INTAKE_GROUP, INTAKE_TOPIC


@pytest.fixture
def queue(clock):
    return InMemoryQueue(clock=clock)


def _worker(queue, handler, consumer_id="w1"):
    sweeper = PendingSweeper(
        queue, INTAKE_TOPIC, INTAKE_GROUP,
        policy=RetryPolicy(max_retries=3, claim_timeout_ms=1_000)
    )
    return QueueConsumerWorker(
        queue=queue,
        topic=INTAKE_TOPIC,
        group=INTAKE_GROUP,
        consumer_id=consumer_id,
        handler=handler,
        sweeper=sweeper,
        poll_interval=0
    )


async def _deliver(queue, payload, consumer_id="w1"):
    await queue.ensure_group(INTAKE_TOPIC, INTAKE_GROUP)
    await queue.publish(INTAKE_TOPIC, payload)
    return await queue.fetch_next(INTAKE_TOPIC, INTAKE_GROUP, consumer_id)


class TestProcessMessage:
    """Settlement of a single message"""

    @pytest.mark.asyncio
    async def test_success_acknowledges(self, queue):
        """Successful handling acknowledges the message"""
        handler = AsyncMock()
        worker = _worker(queue, handler)
        message = await _deliver(queue, {"n": 1})

        assert await worker.process_message(message) is True

        handler.assert_awaited_once_with(message)
        assert await queue.list_stale_pending(INTAKE_TOPIC, INTAKE_GROUP) == []
        assert worker.get_stats()["messages_processed"] == 1

    @pytest.mark.asyncio
    async def test_data_integrity_error_dead_letters(self, queue):
        """Test a data integrity error dead-letters the message"""
        handler = AsyncMock(side_effect=MalformedMessageError("no phone"))
        worker = _worker(queue, handler)
        message = await _deliver(queue, {"n": 1})

        assert await worker.process_message(message) is False

        assert await queue.list_stale_pending(INTAKE_TOPIC, INTAKE_GROUP) == []
        dead = queue.messages(dead_letter_topic(INTAKE_TOPIC, INTAKE_GROUP))
        assert dead[0]["reason"] == "MalformedMessageError: no phone"
        assert worker.get_stats()["messages_dead_lettered"] == 1

    @pytest.mark.asyncio
    async def test_transient_error_stays_pending(self, queue):
        """Transient errors leave the message pending"""
        handler = AsyncMock(side_effect=TransientInfraError("db down"))
        worker = _worker(queue, handler)
        message = await _deliver(queue, {"n": 1})

        assert await worker.process_message(message) is False

        pending = await queue.list_stale_pending(INTAKE_TOPIC, INTAKE_GROUP)
        assert [p.message_id for p in pending] == [message.id]
        assert queue.messages(dead_letter_topic(INTAKE_TOPIC, INTAKE_GROUP)) == []
        assert worker.get_stats()["messages_failed"] == 1

    @pytest.mark.asyncio
    async def test_trace_id_bound_while_handling(self, queue):
        """Test the trace id is bound during handling"""
        seen = []

        async def handler(message):
            seen.append(get_trace_id())

        worker = _worker(queue, handler)
        message = await _deliver(queue, {"opportunityId": "o1", "traceId": "trace-9"})

        await worker.process_message(message)

        assert seen == ["trace-9"]
        assert get_trace_id() is None


class TestSweep:

    @pytest.mark.asyncio
    async def test_reclaimed_messages_are_processed(self, queue, clock):
        """Test messages reclaimed by the sweeper are handled"""
        handler = AsyncMock()
        await _deliver(queue, {"n": 1}, consumer_id="crashed")
        clock.advance(seconds=5)

        worker = _worker(queue, handler)
        worker.running = True
        handled = await worker.sweep_once()

        assert handled == 1
        assert handler.await_args.args[0].delivery_count == 2
        assert await queue.list_stale_pending(INTAKE_TOPIC, INTAKE_GROUP) == []

    @pytest.mark.asyncio
    async def test_failing_message_ends_in_dead_letter(self, queue, clock):
        """A message that never succeeds is dead-lettered after max_retries deliveries"""
        handler = AsyncMock(side_effect=TransientInfraError("CRM down"))
        worker = _worker(queue, handler)
        worker.running = True
        message = await _deliver(queue, {"n": 1})
        await worker.process_message(message)

        for _ in range(3):
            clock.advance(seconds=5)
            await worker.sweep_once()

        assert handler.await_count == 3
        dead = queue.messages(dead_letter_topic(INTAKE_TOPIC, INTAKE_GROUP))
        assert len(dead) == 1
        assert dead[0]["delivery_count"] == 3

    @pytest.mark.asyncio
    async def test_stopped_worker_leaves_reclaimed_messages(self, queue, clock):
        """Stopped worker should not drain reclaimed messages"""
        handler = AsyncMock()
        await _deliver(queue, {"n": 1}, consumer_id="crashed")
        clock.advance(seconds=5)

        worker = _worker(queue, handler)
        handled = await worker.sweep_once()

        assert handled == 0
        handler.assert_not_awaited()


class TestRunLoop:

    @pytest.mark.asyncio
    async def test_run_processes_until_stopped(self, queue):
        """Test the run loop handles messages until stopped"""
        await queue.ensure_group(INTAKE_TOPIC, INTAKE_GROUP)
        await queue.publish(INTAKE_TOPIC, {"n": 1})
        worker = None

        async def handler(message):
            worker.stop()

        worker = _worker(queue, handler)
        await worker.run()

        assert worker.running is False
        assert worker.get_stats()["messages_processed"] == 1

    @pytest.mark.asyncio
    async def test_run_creates_group(self, queue):
        """Test the run loop creates the consumer group"""
        worker = _worker(queue, AsyncMock())
        worker.sweep_once = AsyncMock(side_effect=lambda: worker.stop())

        await worker.run()

        assert await queue.fetch_next(INTAKE_TOPIC, INTAKE_GROUP, "w1") is None
        worker.sweep_once.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stops_after_consecutive_errors(self, monkeypatch):
        """Test the worker gives up after repeated fetch errors"""
        queue = AsyncMock()
        queue.fetch_next.side_effect = TransientInfraError("redis down")
        queue.list_stale_pending.return_value = []
        monkeypatch.setattr("leadflow.workers.consumer_worker.asyncio.sleep", AsyncMock())

        worker = QueueConsumerWorker(
            queue=queue,
            topic=INTAKE_TOPIC,
            group=INTAKE_GROUP,
            consumer_id="w1",
            handler=AsyncMock(),
            sweeper=PendingSweeper(queue, INTAKE_TOPIC, INTAKE_GROUP, policy=RetryPolicy())
        )
        worker.MAX_CONSECUTIVE_ERRORS = 3

        await worker.run()

        assert queue.fetch_next.await_count == 3
        assert worker.running is False


class TestConsumerId:

    def test_includes_host_pid_and_index(self):
        """Test consumer ids carry host, pid and index"""
        consumer_id = default_consumer_id("intake", 2)

        assert consumer_id.startswith("intake-")
        assert consumer_id.endswith(f"-{os.getpid()}-2")

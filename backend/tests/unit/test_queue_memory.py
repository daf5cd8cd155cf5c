"""
Unit tests for the in-memory durable queue
"""
import pytest

from leadflow.core.errors import QueueGroupMissingError
from leadflow.domain.models.queue_message import dead_letter_topic
from leadflow.infrastructure.queue.memory import InMemoryQueue

TOPIC = "leads.intake"
GROUP = "intake-processors"


@pytest.fixture
def queue(clock):
    return InMemoryQueue(clock=clock)


class TestConsumerGroups:
    """Group creation and cursor semantics"""

    @pytest.mark.asyncio
    async def test_group_starts_at_end_of_stream(self, queue):
        """Messages published before the group exists are not delivered to it"""
        await queue.publish(TOPIC, {"n": 1})
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 2})

        message = await queue.fetch_next(TOPIC, GROUP, "c1")
        assert message.payload == {"n": 2}
        assert await queue.fetch_next(TOPIC, GROUP, "c1") is None

    @pytest.mark.asyncio
    async def test_ensure_group_is_idempotent(self, queue):
        """Test ensure_group can be called twice"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        await queue.ensure_group(TOPIC, GROUP)

        message = await queue.fetch_next(TOPIC, GROUP, "c1")
        assert message is not None

    @pytest.mark.asyncio
    async def test_fetch_without_group_raises(self, queue):
        """Fetch without a group should raise"""
        with pytest.raises(QueueGroupMissingError):
            await queue.fetch_next(TOPIC, "missing", "c1")

    @pytest.mark.asyncio
    async def test_groups_consume_independently(self, queue):
        """Test groups consume independently"""
        await queue.ensure_group(TOPIC, "a")
        await queue.ensure_group(TOPIC, "b")
        await queue.publish(TOPIC, {"n": 1})

        first = await queue.fetch_next(TOPIC, "a", "c1")
        second = await queue.fetch_next(TOPIC, "b", "c1")

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_each_message_delivered_once_per_group(self, queue):
        """Test each message is delivered once per group"""
        await queue.ensure_group(TOPIC, GROUP)
        for n in range(3):
            await queue.publish(TOPIC, {"n": n})

        seen = []
        for consumer in ("c1", "c2", "c1"):
            message = await queue.fetch_next(TOPIC, GROUP, consumer)
            seen.append(message.payload["n"])

        assert seen == [0, 1, 2]
        assert await queue.fetch_next(TOPIC, GROUP, "c2") is None


class TestPendingEntries:
    """Acknowledge, reclaim and dead-letter"""

    @pytest.mark.asyncio
    async def test_fetched_message_is_pending_until_acknowledged(self, queue):
        """Fetched message stays pending until acknowledged"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")

        pending = await queue.list_stale_pending(TOPIC, GROUP)
        assert [p.message_id for p in pending] == [message.id]
        assert pending[0].consumer == "c1"
        assert pending[0].delivery_count == 1

        await queue.acknowledge(TOPIC, GROUP, message.id)
        assert await queue.list_stale_pending(TOPIC, GROUP) == []

    @pytest.mark.asyncio
    async def test_idle_time_follows_clock(self, queue, clock):
        """Test idle time follows the clock"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        await queue.fetch_next(TOPIC, GROUP, "c1")

        clock.advance(seconds=90)

        pending = await queue.list_stale_pending(TOPIC, GROUP)
        assert pending[0].ms_since_delivery == 90_000

    @pytest.mark.asyncio
    async def test_reclaim_respects_min_idle(self, queue, clock):
        """Test reclaim respects the minimum idle time"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")

        clock.advance(seconds=10)
        assert await queue.reclaim(TOPIC, GROUP, "c2", message.id, min_idle_ms=60_000) is None

        clock.advance(seconds=60)
        reclaimed = await queue.reclaim(TOPIC, GROUP, "c2", message.id, min_idle_ms=60_000)

        assert reclaimed.id == message.id
        assert reclaimed.delivery_count == 2
        assert reclaimed.payload == {"n": 1}

        pending = await queue.list_stale_pending(TOPIC, GROUP)
        assert pending[0].consumer == "c2"
        assert pending[0].ms_since_delivery == 0

    @pytest.mark.asyncio
    async def test_second_reclaim_loses(self, queue, clock):
        """Two sweepers racing for the same entry: only the first wins"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")
        clock.advance(minutes=2)

        first = await queue.reclaim(TOPIC, GROUP, "c2", message.id, min_idle_ms=60_000)
        second = await queue.reclaim(TOPIC, GROUP, "c3", message.id, min_idle_ms=60_000)

        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_reclaim_of_acknowledged_entry_returns_none(self, queue):
        """Reclaiming an acknowledged entry returns None"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")
        await queue.acknowledge(TOPIC, GROUP, message.id)

        assert await queue.reclaim(TOPIC, GROUP, "c2", message.id) is None

    @pytest.mark.asyncio
    async def test_dead_letter_moves_entry(self, queue):
        """Test dead-lettering moves the entry"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")

        await queue.dead_letter(TOPIC, GROUP, message, reason="broken")

        assert await queue.list_stale_pending(TOPIC, GROUP) == []
        dead = queue.messages(dead_letter_topic(TOPIC, GROUP))
        assert len(dead) == 1
        assert dead[0]["message_id"] == message.id
        assert dead[0]["reason"] == "broken"
        assert dead[0]["payload"] == {"n": 1}
        assert dead[0]["original_topic"] == TOPIC

    @pytest.mark.asyncio
    async def test_dead_letter_of_acknowledged_entry_is_a_noop(self, queue):
        """Test an entry acknowledged first is never also dead-lettered"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")
        await queue.acknowledge(TOPIC, GROUP, message.id)

        assert await queue.dead_letter(TOPIC, GROUP, message, reason="late") is None
        assert queue.messages(dead_letter_topic(TOPIC, GROUP)) == []

    @pytest.mark.asyncio
    async def test_second_dead_letter_is_a_noop(self, queue):
        """Test dead-lettering the same entry twice writes one entry"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")

        assert await queue.dead_letter(TOPIC, GROUP, message, reason="a") is not None
        assert await queue.dead_letter(TOPIC, GROUP, message, reason="b") is None
        assert len(queue.messages(dead_letter_topic(TOPIC, GROUP))) == 1

    @pytest.mark.asyncio
    async def test_stats(self, queue):
        """Test queue stats"""
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 1})
        await queue.publish(TOPIC, {"n": 2})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")
        await queue.dead_letter(TOPIC, GROUP, message, reason="x")
        await queue.fetch_next(TOPIC, GROUP, "c1")

        stats = await queue.stats(TOPIC, GROUP)

        assert stats == {"length": 2, "pending": 1, "dead_letters": 1}

    @pytest.mark.asyncio
    async def test_read_returns_payload_without_delivery(self, queue):
        """Test read returns the payload without delivering"""
        message_id = await queue.publish(TOPIC, {"n": 7})

        message = await queue.read(TOPIC, message_id)

        assert message.payload == {"n": 7}
        assert await queue.read(TOPIC, "0-0") is None

    @pytest.mark.asyncio
    async def test_read_finds_entry_by_id_on_any_topic(self, queue):
        """Test payloads are looked up by id, including dead-letter entries"""
        ids = [await queue.publish(TOPIC, {"n": n}) for n in range(5)]
        await queue.ensure_group(TOPIC, GROUP)
        await queue.publish(TOPIC, {"n": 5})
        message = await queue.fetch_next(TOPIC, GROUP, "c1")
        dlq_id = await queue.dead_letter(TOPIC, GROUP, message, reason="x")

        assert (await queue.read(TOPIC, ids[3])).payload == {"n": 3}
        dead = await queue.read(dead_letter_topic(TOPIC, GROUP), dlq_id)
        assert dead.payload["message_id"] == message.id
        assert await queue.read(dead_letter_topic(TOPIC, GROUP), ids[3]) is None


class TestDeadLetterTopic:

    def test_name_is_deterministic(self):
        """Test the dead-letter topic name is deterministic"""
        assert dead_letter_topic("leads.intake", "g1") == "leads.intake.dlq.g1"

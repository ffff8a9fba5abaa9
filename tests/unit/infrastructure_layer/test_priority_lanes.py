"""
Unit Tests for the Priority Lanes

Runs the lane runtime against the in-memory stream fake: routing, weighted
polling, acknowledgement, backpressure, reaping and delayed retries.
"""

import random
from collections import Counter
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from broadcast_reliability.core.config.constants import LANES, SCHEDULED_RETRIES_KEY, Priority
from broadcast_reliability.core.exceptions import QueueConsumerError, QueueError, QueueFullError
from broadcast_reliability.infrastructure.message_queue.priority_lanes import (
    BackpressureController,
    MessageSerializer,
    WeightedLaneSelector,
)


@pytest.mark.unit
class TestMessageSerializer:
    def test_serialize_encodes_structures_and_drops_none(self):
        fields = MessageSerializer.serialize(
            {"payload": {"progress": 80}, "tags": ["a"], "skip": None, "attempt": 2}
        )

        assert fields == {"payload": '{"progress":80}', "tags": '["a"]', "attempt": "2"}

    def test_deserialize_parses_json_values_only(self):
        data = MessageSerializer.deserialize(
            {"payload": '{"progress":80}', "channel": "sync_status", "broken": "{nope"}
        )

        assert data == {"payload": {"progress": 80}, "channel": "sync_status", "broken": "{nope"}


@pytest.mark.unit
class TestWeightedLaneSelector:
    def test_every_lane_visited_once(self):
        order = WeightedLaneSelector(rng=random.Random(1)).order()

        assert sorted(lane.name for lane in order) == sorted(lane.name for lane in LANES)

    def test_first_lane_frequency_follows_weights(self):
        selector = WeightedLaneSelector(rng=random.Random(1234))
        rounds = 20_000

        firsts = Counter(selector.order()[0].name for _ in range(rounds))

        total_weight = sum(lane.weight for lane in LANES)
        for lane in LANES:
            expected = lane.weight / total_weight
            assert abs(firsts[lane.name] / rounds - expected) < 0.02
        assert firsts["critical"] > firsts["high"] > firsts["default"] > firsts["low"]


@pytest.mark.unit
class TestProduceAndPoll:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "priority, stream",
        [
            (Priority.CRITICAL, "broadcast:lane:critical"),
            (Priority.HIGH, "broadcast:lane:high"),
            (Priority.MEDIUM, "broadcast:lane:default"),
            (Priority.LOW, "broadcast:lane:low"),
        ],
    )
    async def test_produce_routes_to_lane(self, lanes, redis, priority, stream):
        await lanes.initialize()

        message_id = await lanes.produce(priority, {"task_id": "t-1", "payload": {"n": 1}})

        assert message_id == "1-0"
        assert redis.streams[stream]["entries"]["1-0"]["task_id"] == "t-1"

    @pytest.mark.asyncio
    async def test_poll_reads_across_lanes(self, lanes):
        await lanes.initialize()
        for index in range(3):
            await lanes.produce(Priority.LOW, {"task_id": f"low-{index}"})
            await lanes.produce(Priority.CRITICAL, {"task_id": f"crit-{index}", "payload": {"i": index}})

        messages = await lanes.poll("worker-1", batch_size=10)

        assert len(messages) == 6
        assert {m.lane.name for m in messages} == {"low", "critical"}
        critical = [m for m in messages if m.lane.name == "critical"]
        assert [m.data["payload"] for m in critical] == [{"i": 0}, {"i": 1}, {"i": 2}]

    @pytest.mark.asyncio
    async def test_poll_respects_batch_size(self, lanes):
        await lanes.initialize()
        for index in range(5):
            await lanes.produce(Priority.HIGH, {"task_id": str(index)})

        first = await lanes.poll("worker-1", batch_size=2)
        second = await lanes.poll("worker-1", batch_size=10)

        assert len(first) == 2
        assert len(second) == 3

    @pytest.mark.asyncio
    async def test_ack_only_once(self, lanes):
        await lanes.initialize()
        await lanes.produce(Priority.HIGH, {"task_id": "t-1"})
        [message] = await lanes.poll("worker-1")

        assert await lanes.ack(message) is True
        assert await lanes.ack(message) is False

    @pytest.mark.asyncio
    async def test_lane_sizes(self, lanes):
        await lanes.initialize()
        await lanes.produce(Priority.MEDIUM, {"task_id": "a"})
        await lanes.produce(Priority.MEDIUM, {"task_id": "b"})

        assert await lanes.lane_sizes() == {"critical": 0, "high": 0, "default": 2, "low": 0}

    @pytest.mark.asyncio
    async def test_redis_failure_becomes_queue_error(self, lanes, redis):
        await lanes.initialize()
        redis.fail_streams = RedisConnectionError("connection reset")

        with pytest.raises(QueueError):
            await lanes.produce(Priority.HIGH, {"task_id": "t-1"})
        with pytest.raises(QueueConsumerError):
            await lanes.poll("worker-1")


@pytest.mark.unit
class TestBackpressure:
    @pytest.mark.asyncio
    async def test_full_lane_raises_after_retries(self, lanes):
        await lanes.initialize()
        lanes._backpressure = BackpressureController(
            max_depth=2, threshold=0.5, max_retries=2, base_delay=0, max_delay=0
        )
        await lanes.produce(Priority.LOW, {"task_id": "a"})
        await lanes.produce(Priority.LOW, {"task_id": "b"})

        with pytest.raises(QueueFullError):
            await lanes.produce(Priority.LOW, {"task_id": "c"})

        # Other lanes are unaffected
        assert await lanes.produce(Priority.HIGH, {"task_id": "d"})

    def test_check_capacity(self):
        controller = BackpressureController(
            max_depth=10, threshold=0.8, max_retries=1, base_delay=0, max_delay=0
        )

        assert controller.check_capacity(LANES[0], 7) is False
        assert controller.check_capacity(LANES[0], 8) is False
        assert controller.check_capacity(LANES[0], 10) is True


@pytest.mark.unit
class TestReapStale:
    @pytest.mark.asyncio
    async def test_idle_message_is_reclaimed(self, lanes, clock):
        await lanes.initialize()
        await lanes.produce(Priority.HIGH, {"task_id": "t-1"})
        await lanes.poll("crashed-worker")

        reclaimed, dead = await lanes.reap_stale("worker-2", min_idle_ms=60_000, max_deliveries=3)
        assert reclaimed == [] and dead == []

        clock.advance(61)
        reclaimed, dead = await lanes.reap_stale("worker-2", min_idle_ms=60_000, max_deliveries=3)

        assert dead == []
        assert len(reclaimed) == 1
        assert reclaimed[0].data["task_id"] == "t-1"
        assert reclaimed[0].deliveries == 2

    @pytest.mark.asyncio
    async def test_message_dies_after_max_deliveries(self, lanes, redis, clock):
        await lanes.initialize()
        await lanes.produce(Priority.CRITICAL, {"task_id": "t-1", "payload": {"k": "v"}})
        await lanes.poll("crashed-worker")

        for _ in range(2):
            clock.advance(61)
            reclaimed, dead = await lanes.reap_stale("worker-2", 60_000, max_deliveries=3)
            assert len(reclaimed) == 1 and dead == []

        clock.advance(61)
        reclaimed, dead = await lanes.reap_stale("worker-2", 60_000, max_deliveries=3)

        assert reclaimed == []
        assert len(dead) == 1
        assert dead[0].deliveries == 3
        assert dead[0].data == {"task_id": "t-1", "payload": {"k": "v"}}

        # Stays on the lane until the caller has stored its dead letter
        assert (await lanes.lane_sizes())["critical"] == 1
        clock.advance(61)
        _, dead_again = await lanes.reap_stale("worker-2", 60_000, max_deliveries=3)
        assert [message.message_id for message in dead_again] == [dead[0].message_id]

        assert await lanes.ack(dead[0]) is True
        assert redis.streams["broadcast:lane:critical"]["entries"] == {}
        assert await lanes.reap_stale("worker-2", 60_000, max_deliveries=3) == ([], [])

    @pytest.mark.asyncio
    async def test_acknowledged_message_is_not_reaped(self, lanes, clock):
        await lanes.initialize()
        await lanes.produce(Priority.HIGH, {"task_id": "t-1"})
        [message] = await lanes.poll("worker-1")
        await lanes.ack(message)

        clock.advance(600)
        assert await lanes.reap_stale("worker-2", 60_000, max_deliveries=1) == ([], [])


@pytest.mark.unit
class TestDelayedRetries:
    @pytest.mark.asyncio
    async def test_retry_promoted_once_due(self, lanes, clock):
        await lanes.initialize()
        ready_at = await lanes.schedule_retry(Priority.HIGH, {"task_id": "t-1", "attempt": 2}, delay=5)

        assert ready_at == clock() + 5
        assert await lanes.scheduled_count() == 1
        assert await lanes.promote_due_retries() == 0

        clock.advance(5)
        assert await lanes.promote_due_retries() == 1

        [message] = await lanes.poll("worker-1")
        assert message.lane.name == "high"
        assert message.data["task_id"] == "t-1"
        assert message.data["priority"] == "high"
        assert await lanes.scheduled_count() == 0

    @pytest.mark.asyncio
    async def test_lost_zrem_race_does_not_duplicate(self, lanes, redis, clock):
        await lanes.initialize()
        await lanes.schedule_retry(Priority.LOW, {"task_id": "t-1"}, delay=0)
        redis.zrem = AsyncMock(return_value=0)

        assert await lanes.promote_due_retries() == 0
        assert await lanes.lane_sizes() == {"critical": 0, "high": 0, "default": 0, "low": 0}

    @pytest.mark.asyncio
    async def test_unreadable_member_is_dropped(self, lanes, redis):
        await lanes.initialize()
        await redis.zadd(SCHEDULED_RETRIES_KEY, {"not-json": 0})

        assert await lanes.promote_due_retries() == 0
        assert await lanes.scheduled_count() == 0

    @pytest.mark.asyncio
    async def test_failed_lane_write_keeps_retries_scheduled(self, lanes, redis, clock):
        await lanes.initialize()
        first_ready = await lanes.schedule_retry(Priority.HIGH, {"task_id": "t-1"}, delay=5)
        await lanes.schedule_retry(Priority.LOW, {"task_id": "t-2"}, delay=6)
        clock.advance(10)
        redis.fail_streams = RedisConnectionError("connection reset")

        with pytest.raises(QueueError):
            await lanes.promote_due_retries()

        assert await lanes.scheduled_count() == 2
        assert sorted(redis.zsets[SCHEDULED_RETRIES_KEY].values())[0] == first_ready

        redis.fail_streams = None
        assert await lanes.promote_due_retries() == 2
        assert await lanes.scheduled_count() == 0
        assert await lanes.lane_sizes() == {"critical": 0, "high": 1, "default": 0, "low": 1}

    @pytest.mark.asyncio
    async def test_full_lane_returns_retry_to_schedule(self, lanes, clock):
        await lanes.initialize()
        await lanes.schedule_retry(Priority.HIGH, {"task_id": "t-1"}, delay=0)
        lanes._backpressure.check_capacity = lambda lane, depth: True
        lanes._backpressure.create_retry_handler = lambda lane, **kwargs: AsyncMock(
            side_effect=QueueFullError("Lane full")
        )

        with pytest.raises(QueueFullError):
            await lanes.promote_due_retries()

        assert await lanes.scheduled_count() == 1

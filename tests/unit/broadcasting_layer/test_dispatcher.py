"""
Unit Tests for the Priority Dispatcher
"""

from unittest.mock import AsyncMock, patch

import pytest

from broadcast_reliability.broadcasting.dispatcher import PriorityDispatcher, enqueue_broadcast
from broadcast_reliability.broadcasting.rate_limiter import BroadcastRateLimiter
from broadcast_reliability.core.config.constants import RATE_LIMITS, BucketLimit, Priority
from broadcast_reliability.core.exceptions import QueueError, RateLimitExceededError


@pytest.mark.unit
class TestResolvePriority:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("critical", Priority.CRITICAL),
            ("HIGH", Priority.HIGH),
            (Priority.LOW, Priority.LOW),
            ("urgent", Priority.MEDIUM),
            (None, Priority.MEDIUM),
        ],
    )
    def test_resolve(self, value, expected):
        assert PriorityDispatcher.resolve_priority(value) is expected


@pytest.mark.unit
class TestEnqueue:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "priority, lane",
        [("critical", "critical"), ("high", "high"), ("medium", "default"), ("low", "low"), ("bogus", "default")],
    )
    async def test_routes_to_lane(self, dispatcher, lanes, priority, lane):
        await lanes.initialize()

        await dispatcher.enqueue("sync_status", "sync_session", 42, {"progress": 1}, priority)

        sizes = await lanes.lane_sizes()
        assert sizes[lane] == 1
        assert sum(sizes.values()) == 1

    @pytest.mark.asyncio
    async def test_task_shape(self, dispatcher, lanes):
        await lanes.initialize()

        task_id = await dispatcher.enqueue("sync_status", "sync_session", 42, {"progress": 1}, "high")

        [message] = await lanes.poll("reader")
        assert message.data["task_id"] == task_id
        assert message.data["target_id"] == "42"
        assert message.data["payload"] == {"progress": 1}
        assert message.data["priority"] == "high"
        assert message.data["attempt"] == "1"

    @pytest.mark.asyncio
    async def test_queued_counted_even_when_lane_write_fails(self, dispatcher, lanes, analytics):
        lanes.produce = AsyncMock(side_effect=QueueError("lane down"))

        with pytest.raises(QueueError):
            await dispatcher.enqueue("sync_status", "sync_session", 42, {}, "low")

        assert (await analytics.get_metrics())["queued"] == 1

    @pytest.mark.asyncio
    async def test_rate_limited_broadcast_is_not_queued(self, lanes, analytics, redis, clock):
        await lanes.initialize()
        limiter = BroadcastRateLimiter(
            redis, clock=clock, limits={**RATE_LIMITS, Priority.HIGH: BucketLimit(requests=1, burst=0)}
        )
        dispatcher = PriorityDispatcher(lanes, analytics, limiter)
        await dispatcher.enqueue("sync_status", "sync_session", 42, {}, "high", identifier="user:7")

        with pytest.raises(RateLimitExceededError):
            await dispatcher.enqueue("sync_status", "sync_session", 42, {}, "high", identifier="user:7")

        assert (await lanes.lane_sizes())["high"] == 1
        assert (await analytics.get_metrics())["queued"] == 1

        # Another caller has its own bucket
        await dispatcher.enqueue("sync_status", "sync_session", 42, {}, "high", identifier="user:8")
        assert (await lanes.lane_sizes())["high"] == 2


@pytest.mark.unit
class TestEnqueueBroadcast:
    @pytest.mark.asyncio
    async def test_uses_process_wide_dispatcher(self):
        service = AsyncMock()
        service.dispatcher.enqueue = AsyncMock(return_value="t-1")

        with patch(
            "broadcast_reliability.broadcasting.service.get_broadcast_service", return_value=service
        ):
            result = await enqueue_broadcast("dashboard", "user", 7, {"changed": True}, "critical")

        assert result is None
        service.dispatcher.enqueue.assert_awaited_once_with(
            "dashboard", "user", 7, {"changed": True}, "critical"
        )

"""
Pytest Configuration and Shared Test Fixtures

This module provides reusable fixtures for all tests. All fixtures defined
here are automatically available to all test files.

Components are wired the way BroadcastReliabilityService wires them, on top
of an in-memory Redis and a controllable clock.
"""

import random
from unittest.mock import AsyncMock

import pytest

from broadcast_reliability.broadcasting.analytics import BroadcastAnalytics
from broadcast_reliability.broadcasting.dead_letter_store import DeadLetterStore
from broadcast_reliability.broadcasting.dispatcher import PriorityDispatcher
from broadcast_reliability.broadcasting.housekeeping import HousekeepingSweeper
from broadcast_reliability.broadcasting.rate_limiter import BroadcastRateLimiter
from broadcast_reliability.broadcasting.recovery import RecoverySweeper
from broadcast_reliability.broadcasting.resolvers import RegistryTargetResolver
from broadcast_reliability.broadcasting.worker import (
    BroadcastWorker,
    DeliveryPipeline,
    LaneConsumer,
    WorkerConfig,
)
from broadcast_reliability.infrastructure.message_queue.priority_lanes import (
    PriorityLanes,
    WeightedLaneSelector,
)
from tests.test_fixtures import FakeClock, InMemoryRedis, RecordFactory

# ============================================================================
# Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis(clock):
    """In-memory Redis sharing the test clock."""
    return InMemoryRedis(clock)


@pytest.fixture
def records():
    return RecordFactory()


@pytest.fixture
def transport():
    """Transport whose push succeeds unless a test sets a side effect."""
    mock = AsyncMock()
    mock.push = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def known_targets():
    """Target ids that exist, per target type; tests add and remove entries."""
    return {"sync_session": {"42", "43", "44"}, "user": {"7"}}


@pytest.fixture
def resolver(known_targets):
    resolver = RegistryTargetResolver()
    for target_type in list(known_targets):

        def _lookup(target_id, _type=target_type):
            return target_id in known_targets[_type]

        resolver.register(target_type, AsyncMock(side_effect=_lookup))
    return resolver


# ============================================================================
# Broadcasting Component Fixtures
# ============================================================================


@pytest.fixture
def analytics(redis, clock):
    return BroadcastAnalytics(redis, clock=clock)


@pytest.fixture
def pipeline(transport, resolver):
    return DeliveryPipeline(transport, resolver, push_timeout=1.0)


@pytest.fixture
def store(redis, resolver, pipeline, clock):
    return DeadLetterStore(redis, resolver=resolver, deliverer=pipeline, clock=clock)


@pytest.fixture
def lanes(redis, clock):
    return PriorityLanes(
        redis,
        selector=WeightedLaneSelector(rng=random.Random(7)),
        clock=clock,
    )


@pytest.fixture
def worker(pipeline, store, analytics):
    return BroadcastWorker(pipeline, store, analytics, rng=random.Random(3))


@pytest.fixture
def rate_limiter(redis, clock):
    return BroadcastRateLimiter(redis, clock=clock)


@pytest.fixture
def dispatcher(lanes, analytics):
    return PriorityDispatcher(lanes, analytics)


@pytest.fixture
def recovery(store, analytics):
    return RecoverySweeper(store, analytics, pacing_seconds=0)


@pytest.fixture
def housekeeping(store, analytics):
    return HousekeepingSweeper(store, analytics)


@pytest.fixture
def consumer_config():
    return WorkerConfig(
        batch_size=10,
        idle_sleep_seconds=0,
        claim_idle_ms=60_000,
        max_deliveries=3,
        scheduler_batch=100,
        reaper_interval_seconds=30.0,
        error_backoff_seconds=0,
    )


@pytest.fixture
async def consumer(lanes, worker, consumer_config, clock):
    await lanes.initialize()
    return LaneConsumer(lanes, worker, config=consumer_config, consumer_name="test-worker", clock=clock)

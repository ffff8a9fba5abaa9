"""
Unit Tests for BroadcastReliabilityService

Component wiring, status aggregation, manual retries and the background
consumer lifecycle.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from broadcast_reliability.broadcasting import service as service_module
from broadcast_reliability.broadcasting.service import BroadcastReliabilityService
from broadcast_reliability.core.config.constants import ErrorKind, RecoveryStatus
from broadcast_reliability.core.config.settings import reload_settings
from broadcast_reliability.core.exceptions import DeadLetterRecordNotFoundError


@pytest.fixture
def service(redis, transport, resolver):
    return BroadcastReliabilityService(redis_client=redis, transport=transport, resolver=resolver)


@pytest.mark.unit
class TestServiceWiring:
    def test_store_replays_through_the_pipeline(self, service):
        assert service.store._deliverer is service.pipeline
        assert service.store._resolver is service.resolver

    def test_lanes_are_the_default_introspector(self, service):
        assert service.lane_introspector is service.lanes

    def test_dispatcher_charges_the_rate_limiter(self, service, redis):
        assert service.rate_limiter is not None
        assert service.dispatcher._rate_limiter is service.rate_limiter
        assert service.rate_limiter._redis is redis

    def test_rate_limiter_can_be_disabled(self, redis, transport, resolver, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
        reload_settings()
        try:
            service = BroadcastReliabilityService(
                redis_client=redis, transport=transport, resolver=resolver
            )
        finally:
            monkeypatch.delenv("RATE_LIMIT_ENABLED")
            reload_settings()

        assert service.rate_limiter is None
        assert service.dispatcher._rate_limiter is None

    @pytest.mark.asyncio
    async def test_initialize_once(self, service, redis):
        await service.initialize()
        await service.initialize()

        assert redis.connected is True
        assert len(redis.streams) == 4

        await service.shutdown()
        assert redis.connected is False


@pytest.mark.unit
class TestStatus:
    @pytest.mark.asyncio
    async def test_lane_sizes_come_from_the_introspector(self, redis, transport, resolver):
        introspector = AsyncMock()
        introspector.lane_sizes = AsyncMock(return_value={"critical": 3, "default": 1})
        service = BroadcastReliabilityService(
            redis_client=redis, transport=transport, resolver=resolver, lane_introspector=introspector
        )

        status = await service.status()

        assert status["lanes"] == {"critical": 3, "default": 1}
        assert status["pending_failed_broadcasts"] == 0
        assert status["last_housekeeping"] is None


@pytest.mark.unit
class TestRetryFailed:
    @pytest.mark.asyncio
    async def test_unknown_record(self, service):
        with pytest.raises(DeadLetterRecordNotFoundError):
            await service.retry_failed(404)

    @pytest.mark.asyncio
    async def test_vanished_target_is_not_pushed(self, service, records, transport, known_targets):
        record = await service.store.create(records.record(failed_at=1.0))
        known_targets["sync_session"].discard("42")

        assert await service.retry_failed(record.id) is False

        stored = await service.store.get(record.id)
        assert stored.error_kind is ErrorKind.RECORD_NOT_FOUND
        assert stored.status is RecoveryStatus.PERMANENTLY_SKIPPED
        transport.push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovers(self, service, records):
        record = await service.store.create(records.record(failed_at=1.0))

        assert await service.retry_failed(record.id) is True
        assert (await service.store.get(record.id)).status is RecoveryStatus.RECOVERED


@pytest.mark.unit
class TestConsumerLifecycle:
    @pytest.fixture(autouse=True)
    def process_service(self, service):
        with patch.object(service_module, "_service", service):
            yield
        service_module._consumer = None
        service_module._consumer_task = None

    @pytest.mark.asyncio
    async def test_start_then_stop(self):
        consumer = await service_module.start_lane_consumer()
        await asyncio.sleep(0)

        assert service_module._consumer_task is not None
        assert await service_module.start_lane_consumer() is consumer

        await service_module.stop_lane_consumer()

        assert service_module._consumer is None
        assert service_module._consumer_task is None

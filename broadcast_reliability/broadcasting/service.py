"""
Broadcast Reliability Service

Builds the component graph once per process and exposes the operations the
runner and the API need.

    Redis ─┬─ RedisPubSubTransport ─┐
           │                        ├─ DeliveryPipeline ─┬─ BroadcastWorker ─ LaneConsumer
           ├─ RegistryTargetResolver┘                    └─ DeadLetterStore (deliverer)
           ├─ BroadcastAnalytics
           ├─ BroadcastRateLimiter ─┐
           └─ PriorityLanes ────────┴─ PriorityDispatcher

Usage:
    service = get_broadcast_service()
    await service.initialize()
    await service.dispatcher.enqueue("dashboard", "user", 7, {"changed": True})
"""

import asyncio
from typing import Any

from broadcast_reliability.broadcasting.analytics import BroadcastAnalytics
from broadcast_reliability.broadcasting.dead_letter_store import DeadLetterStore
from broadcast_reliability.broadcasting.dispatcher import PriorityDispatcher
from broadcast_reliability.broadcasting.rate_limiter import BroadcastRateLimiter
from broadcast_reliability.broadcasting.housekeeping import HOUSEKEEPING_JOB, HousekeepingSweeper
from broadcast_reliability.broadcasting.recovery import RECOVERY_JOB, RecoverySweeper
from broadcast_reliability.broadcasting.resolvers import RegistryTargetResolver
from broadcast_reliability.broadcasting.validator import PayloadValidator
from broadcast_reliability.broadcasting.worker import (
    BroadcastWorker,
    DeliveryPipeline,
    LaneConsumer,
    WorkerConfig,
)
from broadcast_reliability.core.config.constants import Stage
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.interfaces import LaneIntrospector, TargetResolver, Transport
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.cache.redis_client import RedisClient, get_redis_client
from broadcast_reliability.infrastructure.message_queue.priority_lanes import PriorityLanes
from broadcast_reliability.infrastructure.transport import RedisPubSubTransport

logger = get_logger(__name__)


class BroadcastReliabilityService:
    def __init__(
        self,
        redis_client: RedisClient | None = None,
        transport: Transport | None = None,
        resolver: TargetResolver | None = None,
        validator: PayloadValidator | None = None,
        lane_introspector: LaneIntrospector | None = None,
    ):
        self.redis = redis_client or get_redis_client()
        self.transport = transport or RedisPubSubTransport(self.redis)
        self.resolver = resolver or RegistryTargetResolver(allow_unregistered=True)

        self.analytics = BroadcastAnalytics(self.redis)
        self.pipeline = DeliveryPipeline(self.transport, self.resolver, validator)
        self.store = DeadLetterStore(self.redis, resolver=self.resolver, deliverer=self.pipeline)
        self.lanes = PriorityLanes(self.redis)
        self.lane_introspector = lane_introspector or self.lanes

        self.worker = BroadcastWorker(self.pipeline, self.store, self.analytics)
        self.rate_limiter = (
            BroadcastRateLimiter(self.redis) if get_settings().rate_limit.RATE_LIMIT_ENABLED else None
        )
        self.dispatcher = PriorityDispatcher(self.lanes, self.analytics, self.rate_limiter)
        self.recovery = RecoverySweeper(self.store, self.analytics)
        self.housekeeping = HousekeepingSweeper(self.store, self.analytics)

        self._initialized = False

    async def initialize(self) -> None:
        """
        Connect Redis and create the lane consumer groups.

        Raises:
            CacheConnectionError: Redis unreachable
            QueueError: Consumer groups could not be created
        """
        if self._initialized:
            return
        await self.redis.connect()
        await self.lanes.initialize()
        self._initialized = True
        logger.info("Broadcast service initialized", stage=Stage.INITIALIZATION)

    async def shutdown(self) -> None:
        await self.redis.disconnect()
        self._initialized = False

    def create_consumer(
        self, config: WorkerConfig | None = None, consumer_name: str | None = None
    ) -> LaneConsumer:
        return LaneConsumer(self.lanes, self.worker, config=config, consumer_name=consumer_name)

    async def status(self) -> dict[str, Any]:
        """Lane sizes, pending dead letters and the last hour of metrics."""
        return {
            "lanes": await self.lane_introspector.lane_sizes(),
            "scheduled_retries": await self.lanes.scheduled_count(),
            "pending_failed_broadcasts": await self.store.pending_count(),
            "metrics": await self.analytics.get_metrics(window_hours=1),
            "last_recovery": await self.analytics.last_run(RECOVERY_JOB),
            "last_housekeeping": await self.analytics.last_run(HOUSEKEEPING_JOB),
        }

    async def retry_failed(self, record_id: int) -> bool:
        """
        Manually retry one dead letter.

        Raises:
            DeadLetterRecordNotFoundError: No record with this ID
        """
        record = await self.store.get(record_id)
        if not await self.store.target_exists(record):
            await self.store.mark_not_found(record)
            return False
        return await self.store.retry(record, manual=True)


_service: BroadcastReliabilityService | None = None


def get_broadcast_service() -> BroadcastReliabilityService:
    """Get the process-wide service."""
    global _service
    if _service is None:
        _service = BroadcastReliabilityService()
    return _service


# =============================================================================
# Background consumer lifecycle
# =============================================================================

_consumer: LaneConsumer | None = None
_consumer_task: asyncio.Task | None = None


async def start_lane_consumer() -> LaneConsumer:
    """Start the process-wide lane consumer as a background task."""
    global _consumer, _consumer_task

    service = get_broadcast_service()
    await service.initialize()

    if _consumer is None:
        _consumer = service.create_consumer()

    if _consumer_task is None or _consumer_task.done():
        _consumer_task = asyncio.create_task(_consumer.start())
        logger.info("Lane consumer task started", consumer=_consumer.consumer_name)

    return _consumer


async def stop_lane_consumer() -> None:
    """Stop the background consumer, cancelling it after the shutdown timeout."""
    global _consumer, _consumer_task

    if _consumer:
        _consumer.stop()

    if _consumer_task:
        timeout = _consumer.config.shutdown_timeout_seconds if _consumer else 5.0
        try:
            await asyncio.wait_for(_consumer_task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Lane consumer shutdown timeout, cancelling task", timeout_seconds=timeout)
            _consumer_task.cancel()
            try:
                await _consumer_task
            except asyncio.CancelledError:
                logger.info("Lane consumer task cancelled")

    _consumer = None
    _consumer_task = None

"""
Priority Lanes on Redis Streams

Architecture:
    PriorityLanes (Public API, LaneIntrospector)
        ├── LaneStreamManager (one per lane: stream + consumer group)
        ├── BackpressureController (lane depth and produce retries)
        ├── MessageSerializer (payload encoding/decoding)
        ├── MetricsRecorder (lane metrics)
        ├── WeightedLaneSelector (weighted poll order)
        └── DelayedRetryScheduler (ZSET of retries waiting for their delay)

Lanes:
    broadcast:lane:critical  weight 6
    broadcast:lane:high      weight 4
    broadcast:lane:default   weight 2
    broadcast:lane:low       weight 1

Delivery semantics:
    - A message stays in the consumer group's pending list until XACK,
      after which it is deleted from the lane
    - Pending messages idle past the claim threshold are reclaimed
    - A message delivered WORKER_MAX_DELIVERIES times without an ack is a
      dead job: it is acknowledged, deleted and handed back to the caller
      with its field snapshot
"""

import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import orjson
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from broadcast_reliability.core.config.constants import (
    LANE_TABLE,
    LANES,
    SCHEDULED_RETRIES_KEY,
    Lane,
    Priority,
    Stage,
)
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.exceptions import (
    CacheError,
    QueueConsumerError,
    QueueError,
    QueueFullError,
)
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.cache.redis_client import RedisClient, get_redis_client
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


@dataclass
class LaneMessage:
    """A message read from (or reaped off) a lane."""

    lane: Lane
    message_id: str
    fields: dict[str, str]
    data: dict[str, Any]
    deliveries: int = 1


# =============================================================================
# LAYER 1: STREAM MANAGEMENT
# One Redis Stream and consumer group per lane
# =============================================================================


class LaneStreamManager:
    """
    Wraps the stream commands for a single lane.

    Consumer Group Pattern:
    - Stream: ordered log of broadcast tasks
    - Group: all broadcast workers
    - Pending: delivered but not yet acknowledged
    """

    def __init__(self, lane: Lane, group_name: str, redis_client: RedisClient):
        self.lane = lane
        self._stream_name = lane.stream_key
        self._group_name = group_name
        self._redis = redis_client
        self._initialized = False

    async def initialize(self) -> None:
        """
        Create the consumer group (idempotent).

        STAGE-QUEUE.1: Initialization

        Raises:
            QueueError: If the group cannot be created
        """
        if self._initialized:
            return

        try:
            await self._redis.client.xgroup_create(
                self._stream_name, self._group_name, id="0", mkstream=True
            )
            logger.info(
                "Consumer group created",
                stage=Stage.QUEUE,
                lane=self.lane.name,
                group=self._group_name,
            )
        except RedisError as e:
            if "BUSYGROUP" not in str(e):
                logger.error("Failed to create consumer group", stage=Stage.QUEUE, error=str(e))
                raise QueueError(f"Failed to create consumer group: {e}") from e
            logger.debug("Consumer group already exists", stage=Stage.QUEUE, lane=self.lane.name)

        self._initialized = True

    async def length(self) -> int:
        return await self._redis.client.xlen(self._stream_name)

    async def add(self, fields: dict[str, str]) -> str:
        """XADD without trimming; a reliability lane never drops entries."""
        return await self._redis.client.xadd(self._stream_name, fields)

    async def read(self, consumer_name: str, count: int) -> list[tuple[str, dict[str, str]]]:
        """Non-blocking XREADGROUP of never-delivered messages."""
        response = await self._redis.client.xreadgroup(
            self._group_name, consumer_name, {self._stream_name: ">"}, count=count
        )

        messages = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                messages.append((message_id, fields))
        return messages

    async def ack(self, message_id: str) -> int:
        return await self._redis.client.xack(self._stream_name, self._group_name, message_id)

    async def delete(self, message_id: str) -> int:
        return await self._redis.client.xdel(self._stream_name, message_id)

    async def pending(self, min_idle_ms: int, count: int) -> list[dict[str, Any]]:
        """
        Pending entries idle for at least ``min_idle_ms``.

        Each entry: message_id, consumer, time_since_delivered, times_delivered.
        """
        return await self._redis.client.xpending_range(
            self._stream_name, self._group_name, min="-", max="+", count=count, idle=min_idle_ms
        )

    async def claim(
        self, consumer_name: str, min_idle_ms: int, message_ids: list[str]
    ) -> list[tuple[str, dict[str, str]]]:
        if not message_ids:
            return []
        claimed = await self._redis.client.xclaim(
            self._stream_name, self._group_name, consumer_name, min_idle_ms, message_ids
        )
        return [(message_id, fields) for message_id, fields in claimed if fields]

    async def snapshot(self, message_id: str) -> dict[str, str]:
        entries = await self._redis.client.xrange(
            self._stream_name, min=message_id, max=message_id, count=1
        )
        return entries[0][1] if entries else {}


# =============================================================================
# LAYER 2: BACKPRESSURE CONTROL
# =============================================================================


class BackpressureController:
    """
    Applies backpressure when a lane approaches its maximum depth.

    Strategy:
    1. Above threshold: warn
    2. At max depth: retry with exponential backoff + jitter
    3. Still full after retries: QueueFullError
    """

    def __init__(
        self,
        max_depth: int,
        threshold: float,
        max_retries: int,
        base_delay: float,
        max_delay: float,
    ):
        self._max_depth = max_depth
        self._threshold = threshold
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

    def check_capacity(self, lane: Lane, current_depth: int) -> bool:
        """
        Returns:
            True when the lane is full
        """
        is_full = current_depth >= self._max_depth

        if is_full:
            logger.warning(
                "Lane at capacity, applying backpressure",
                stage=Stage.QUEUE,
                lane=lane.name,
                current_length=current_depth,
                max_length=self._max_depth,
            )
        elif current_depth >= int(self._threshold * self._max_depth):
            logger.warning(
                "Lane approaching capacity",
                stage=Stage.QUEUE,
                lane=lane.name,
                current_length=current_depth,
                utilization=round(current_depth / self._max_depth * 100, 1),
            )

        return is_full

    def create_retry_handler(
        self,
        lane: Lane,
        produce_fn: Callable[[], Awaitable[str]],
        check_depth_fn: Callable[[], Awaitable[int]],
        on_retry: Callable[[], None] | None = None,
    ) -> Callable[[], Awaitable[str]]:
        """Wrap ``produce_fn`` in a tenacity retry that re-checks depth each attempt."""

        def _before_sleep(retry_state) -> None:
            if on_retry is not None:
                on_retry()
            logger.info(
                "Backpressure retry",
                stage=Stage.QUEUE,
                attempt=retry_state.attempt_number,
                lane=lane.name,
            )

        @retry(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential_jitter(initial=self._base_delay, max=self._max_delay),
            retry=retry_if_exception_type(QueueFullError),
            before_sleep=_before_sleep,
            reraise=True,
        )
        async def _retry_with_backpressure() -> str:
            current_depth = await check_depth_fn()
            if current_depth >= self._max_depth:
                raise QueueFullError(
                    f"Lane full: {current_depth}/{self._max_depth} messages in {lane.name}",
                    details={"lane": lane.name, "depth": current_depth},
                )
            return await produce_fn()

        return _retry_with_backpressure


# =============================================================================
# LAYER 3: MESSAGE SERIALIZATION
# =============================================================================


class MessageSerializer:
    """
    Converts between task dicts and Redis Stream fields.

    - dict / list / bool values are JSON encoded (orjson)
    - None values are dropped
    - everything else is str()-ed
    """

    @staticmethod
    def serialize(payload: dict[str, Any]) -> dict[str, str]:
        fields = {}
        for key, value in payload.items():
            if value is None:
                continue
            if isinstance(value, dict | list | bool):
                fields[key] = orjson.dumps(value).decode("utf-8")
            else:
                fields[key] = str(value)
        return fields

    @staticmethod
    def deserialize(fields: dict[str, str]) -> dict[str, Any]:
        data = {}
        for key, value in fields.items():
            try:
                if isinstance(value, str) and value[:1] in ("{", "["):
                    data[key] = orjson.loads(value)
                else:
                    data[key] = value
            except orjson.JSONDecodeError:
                data[key] = value
        return data


# =============================================================================
# LAYER 4: METRICS RECORDING
# =============================================================================


class MetricsRecorder:
    def __init__(self, metrics_collector):
        self._metrics = metrics_collector

    def record_produce_attempt(self, lane: Lane) -> None:
        self._metrics.record_queue_produce_attempt(lane.name)

    def record_produce_failure(self, lane: Lane, reason: str) -> None:
        self._metrics.record_queue_produce_failure(lane.name, reason)

    def record_queue_depth(self, lane: Lane, depth: int) -> None:
        self._metrics.record_queue_depth(lane.name, depth)

    def record_backpressure_retry(self, lane: Lane) -> None:
        self._metrics.record_queue_backpressure_retry(lane.name)


# =============================================================================
# LAYER 5: WEIGHTED LANE SELECTION
# =============================================================================


class WeightedLaneSelector:
    """
    Orders lanes for one poll by weighted random sampling without replacement.

    Each lane draws key = U^(1/weight); lanes are visited by descending key,
    so a lane's chance of being polled first is proportional to its weight
    and no lane is ever skipped.
    """

    def __init__(self, lanes: tuple[Lane, ...] = LANES, rng: random.Random | None = None):
        self._lanes = lanes
        self._rng = rng or random.Random()

    def order(self) -> list[Lane]:
        keyed = [
            (self._rng.random() ** (1.0 / lane.weight), lane) for lane in self._lanes
        ]
        keyed.sort(key=lambda item: item[0], reverse=True)
        return [lane for _, lane in keyed]


# =============================================================================
# LAYER 6: DELAYED RETRIES
# =============================================================================


class DelayedRetryScheduler:
    """
    Holds retries until their backoff delay has elapsed.

    ZSET ``broadcast:scheduled``: member = serialized task, score = ready_at.
    A due member is moved to its lane only by the process whose ZREM
    returned 1, so concurrent promoters never duplicate a retry. A member
    whose lane write fails is put back with its original score.
    """

    def __init__(self, redis_client: RedisClient, clock: Callable[[], float] = time.time):
        self._redis = redis_client
        self._clock = clock

    async def schedule(self, task_data: dict[str, Any], delay: float) -> float:
        ready_at = self._clock() + max(delay, 0.0)
        member = orjson.dumps(task_data, option=orjson.OPT_SORT_KEYS).decode("utf-8")
        await self._redis.zadd(SCHEDULED_RETRIES_KEY, {member: ready_at})
        return ready_at

    async def due(self, limit: int) -> list[tuple[str, float]]:
        """Up to ``limit`` (member, ready_at) pairs whose delay has elapsed."""
        return await self._redis.zrangebyscore(
            SCHEDULED_RETRIES_KEY, "-inf", self._clock(), start=0, num=limit, withscores=True
        )

    async def claim(self, member: str) -> bool:
        return await self._redis.zrem(SCHEDULED_RETRIES_KEY, member) == 1

    async def release(self, member: str, ready_at: float) -> None:
        await self._redis.zadd(SCHEDULED_RETRIES_KEY, {member: ready_at})

    async def count(self) -> int:
        return await self._redis.zcard(SCHEDULED_RETRIES_KEY)


# =============================================================================
# LAYER 7: PUBLIC API
# =============================================================================


class PriorityLanes:
    """
    The four weighted broadcast lanes.

    Usage:
        lanes = PriorityLanes()
        await lanes.initialize()

        await lanes.produce(Priority.HIGH, task.to_dict())
        for message in await lanes.poll("worker-1", batch_size=10):
            ...
            await lanes.ack(message)

    STAGE-QUEUE: Lane operations
    """

    def __init__(
        self,
        redis_client: RedisClient | None = None,
        group_name: str | None = None,
        selector: WeightedLaneSelector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()

        self._redis = redis_client or get_redis_client()
        self._group_name = group_name or settings.worker.WORKER_CONSUMER_GROUP
        self._streams = {lane.name: LaneStreamManager(lane, self._group_name, self._redis) for lane in LANES}
        self._backpressure = BackpressureController(
            max_depth=settings.broadcast.BROADCAST_LANE_MAX_DEPTH,
            threshold=settings.broadcast.BROADCAST_BACKPRESSURE_THRESHOLD,
            max_retries=settings.broadcast.BROADCAST_BACKPRESSURE_MAX_RETRIES,
            base_delay=settings.broadcast.BROADCAST_BACKPRESSURE_BASE_DELAY,
            max_delay=settings.broadcast.BROADCAST_BACKPRESSURE_MAX_DELAY,
        )
        self._serializer = MessageSerializer()
        self._metrics = MetricsRecorder(get_metrics_collector())
        self._selector = selector or WeightedLaneSelector()
        self._scheduler = DelayedRetryScheduler(self._redis, clock)

    @staticmethod
    def lane_for(priority: Priority) -> Lane:
        return LANE_TABLE[priority]

    async def initialize(self) -> None:
        for stream in self._streams.values():
            await stream.initialize()

    # -------------------------------------------------------------------------
    # Producing
    # -------------------------------------------------------------------------

    async def produce(self, priority: Priority, payload: dict[str, Any]) -> str:
        """
        Append a task to the lane for ``priority``.

        Returns:
            Stream message ID

        Raises:
            QueueFullError: Lane stayed full through the backpressure retries
            QueueError: Redis failure
        """
        lane = self.lane_for(priority)
        stream = self._streams[lane.name]
        fields = self._serializer.serialize(payload)

        self._metrics.record_produce_attempt(lane)

        try:
            await stream.initialize()
            depth = await stream.length()
            self._metrics.record_queue_depth(lane, depth)

            if self._backpressure.check_capacity(lane, depth):
                handler = self._backpressure.create_retry_handler(
                    lane,
                    produce_fn=lambda: stream.add(fields),
                    check_depth_fn=stream.length,
                    on_retry=lambda: self._metrics.record_backpressure_retry(lane),
                )
                message_id = await handler()
            else:
                message_id = await stream.add(fields)

        except QueueFullError:
            self._metrics.record_produce_failure(lane, "queue_full")
            raise
        except QueueError:
            self._metrics.record_produce_failure(lane, "group_error")
            raise
        except (RedisError, CacheError) as e:
            self._metrics.record_produce_failure(lane, "redis_error")
            logger.error("Failed to produce message", stage=Stage.LANE_WRITE, lane=lane.name, error=str(e))
            raise QueueError(
                f"Failed to produce message on lane {lane.name}: {e}", details={"lane": lane.name}
            ) from e

        logger.debug("Message produced", stage=Stage.LANE_WRITE, lane=lane.name, id=message_id)
        return message_id

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------

    async def poll(self, consumer_name: str, batch_size: int = 10) -> list[LaneMessage]:
        """
        Read up to ``batch_size`` new messages, visiting lanes in weighted order.

        Raises:
            QueueConsumerError: Redis failure
        """
        messages: list[LaneMessage] = []

        try:
            for lane in self._selector.order():
                remaining = batch_size - len(messages)
                if remaining <= 0:
                    break
                stream = self._streams[lane.name]
                await stream.initialize()
                for message_id, fields in await stream.read(consumer_name, remaining):
                    messages.append(self._to_message(lane, message_id, fields))
        except (RedisError, CacheError) as e:
            logger.error("Failed to poll lanes", stage=Stage.QUEUE, error=str(e))
            raise QueueConsumerError(f"Failed to poll lanes: {e}") from e

        return messages

    async def ack(self, message: LaneMessage) -> bool:
        """
        Acknowledge a processed message and remove it from the lane, so the
        lane length is the backlog.

        Returns:
            False if the message was no longer pending (already acknowledged
            or reaped by another worker)
        """
        stream = self._streams[message.lane.name]
        try:
            if await stream.ack(message.message_id) != 1:
                return False
            await stream.delete(message.message_id)
            return True
        except (RedisError, CacheError) as e:
            logger.error("Failed to acknowledge message", stage=Stage.QUEUE, error=str(e))
            raise QueueConsumerError(f"Failed to acknowledge message: {e}") from e

    def _to_message(
        self, lane: Lane, message_id: str, fields: dict[str, str], deliveries: int = 1
    ) -> LaneMessage:
        return LaneMessage(
            lane=lane,
            message_id=message_id,
            fields=fields,
            data=self._serializer.deserialize(fields),
            deliveries=deliveries,
        )

    # -------------------------------------------------------------------------
    # Stale and dead messages
    # -------------------------------------------------------------------------

    async def reap_stale(
        self,
        consumer_name: str,
        min_idle_ms: int,
        max_deliveries: int,
        count: int = 100,
    ) -> tuple[list[LaneMessage], list[LaneMessage]]:
        """
        Sweep every lane's pending list.

        Messages idle past ``min_idle_ms`` are claimed for ``consumer_name``
        and returned for reprocessing. Messages already delivered
        ``max_deliveries`` times are returned as dead jobs carrying their
        field snapshot. Dead jobs stay pending; the caller acks them with
        ack() once their dead letter is stored, so a failed hand-off is
        found again by the next sweep.

        Returns:
            (reclaimed, dead)
        """
        reclaimed: list[LaneMessage] = []
        dead: list[LaneMessage] = []

        try:
            for lane in LANES:
                stream = self._streams[lane.name]
                await stream.initialize()
                entries = await stream.pending(min_idle_ms, count)

                to_claim: dict[str, int] = {}
                for entry in entries:
                    message_id = entry["message_id"]
                    deliveries = int(entry["times_delivered"])
                    if deliveries < max_deliveries:
                        to_claim[message_id] = deliveries
                        continue

                    fields = await stream.snapshot(message_id)
                    dead.append(self._to_message(lane, message_id, fields, deliveries))

                for message_id, fields in await stream.claim(
                    consumer_name, min_idle_ms, list(to_claim)
                ):
                    reclaimed.append(
                        self._to_message(lane, message_id, fields, to_claim.get(message_id, 0) + 1)
                    )
        except (RedisError, CacheError) as e:
            logger.error("Failed to reap pending messages", stage=Stage.JOB_DEATH, error=str(e))
            raise QueueError(f"Failed to reap pending messages: {e}") from e

        if reclaimed or dead:
            logger.info(
                "Pending messages reaped",
                stage=Stage.JOB_DEATH,
                reclaimed=len(reclaimed),
                dead=len(dead),
            )
        return reclaimed, dead

    # -------------------------------------------------------------------------
    # Delayed retries
    # -------------------------------------------------------------------------

    async def schedule_retry(self, priority: Priority, task_data: dict[str, Any], delay: float) -> float:
        """
        Park a retry until ``delay`` seconds from now.

        Returns:
            Epoch at which the retry becomes due
        """
        try:
            return await self._scheduler.schedule({**task_data, "priority": priority.value}, delay)
        except CacheError as e:
            raise QueueError(f"Failed to schedule retry: {e}") from e

    async def promote_due_retries(self, limit: int = 100) -> int:
        """
        Move due retries onto their lanes, one claimed member at a time.

        A retry whose lane write fails goes back to the scheduled set with
        its original ready time and the error propagates; retries not yet
        claimed stay scheduled.

        Returns:
            Number of retries promoted

        Raises:
            QueueError: Redis failure, or a lane stayed full
        """
        try:
            due = await self._scheduler.due(limit)
        except CacheError as e:
            raise QueueError(f"Failed to read scheduled retries: {e}") from e

        promoted = 0
        for member, ready_at in due:
            try:
                if not await self._scheduler.claim(member):
                    continue
            except CacheError as e:
                raise QueueError(f"Failed to claim scheduled retry: {e}") from e

            try:
                task_data = orjson.loads(member)
            except orjson.JSONDecodeError:
                logger.error(
                    "Dropping unreadable scheduled retry",
                    stage=Stage.RETRY_SCHEDULING,
                    member=member[:200],
                )
                continue

            priority = Priority.normalize(task_data.get("priority")) or Priority.MEDIUM
            try:
                await self.produce(priority, task_data)
            except QueueError:
                await self._restore_scheduled(member, ready_at, task_data.get("task_id"))
                raise
            promoted += 1

        if promoted:
            logger.debug("Scheduled retries promoted", stage=Stage.RETRY_SCHEDULING, count=promoted)
        return promoted

    async def _restore_scheduled(self, member: str, ready_at: float, task_id: str | None) -> None:
        try:
            await self._scheduler.release(member, ready_at)
        except CacheError as e:
            logger.error(
                "Failed to restore scheduled retry",
                stage=Stage.RETRY_SCHEDULING,
                task_id=task_id,
                error=str(e),
            )
            raise QueueError(f"Failed to restore scheduled retry: {e}") from e
        logger.warning(
            "Scheduled retry returned after lane write failed",
            stage=Stage.RETRY_SCHEDULING,
            task_id=task_id,
        )

    async def scheduled_count(self) -> int:
        return await self._scheduler.count()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def lane_sizes(self) -> dict[str, int]:
        """Current length of every lane, keyed by lane name."""
        sizes = {}
        try:
            for lane in LANES:
                depth = await self._streams[lane.name].length()
                self._metrics.record_queue_depth(lane, depth)
                sizes[lane.name] = depth
        except (RedisError, CacheError) as e:
            raise QueueError(f"Failed to read lane sizes: {e}") from e
        return sizes


_lanes: PriorityLanes | None = None


def get_priority_lanes() -> PriorityLanes:
    """Get the global lane runtime."""
    global _lanes
    if _lanes is None:
        _lanes = PriorityLanes()
    return _lanes

"""
Broadcast Worker - Delivery Attempts and Lane Consumption

Runs one delivery attempt per lane message and turns its result into an
explicit outcome.

Architecture:
    LaneConsumer (consumer loop)
        └── BroadcastWorker (attempt → Success | Retry | DeadLetter)
                ├── DeliveryPipeline (resolve → validate → push)
                ├── classify() (error → ErrorKind)
                ├── BroadcastAnalytics (success / failure counters)
                └── DeadLetterStore (terminal failures)

Attempt states:
    Attempting ──ok──────────────────────────────→ Success
        │
        ├─ connection/unknown, attempt < max ────→ Retry(delay)
        ├─ connection/unknown, attempt >= max ───→ DeadLetter(retry_exhausted)
        └─ record_not_found / validation ────────→ DeadLetter(kind)

Backoff:
    delay = base(priority) * 2^(attempt-1) + uniform(0, 50% of that)
    capped at BROADCAST_BACKOFF_MAX_SECONDS
    base: critical 0.5s, high 1s, medium 2s, low 4s
"""

import asyncio
import random
import socket
import time
from dataclasses import dataclass
from typing import Any

from broadcast_reliability.broadcasting.analytics import BroadcastAnalytics
from broadcast_reliability.broadcasting.classifier import classify, is_retryable
from broadcast_reliability.broadcasting.dead_letter_store import DeadLetterStore
from broadcast_reliability.broadcasting.models import (
    AttemptOutcome,
    BroadcastTask,
    DeadLetter,
    FailedBroadcastRecord,
    Retry,
    Success,
)
from broadcast_reliability.broadcasting.validator import PayloadValidator
from broadcast_reliability.core.config.constants import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_JITTER_RATIO,
    ErrorKind,
    Priority,
    Stage,
)
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.exceptions import PayloadValidationError
from broadcast_reliability.core.interfaces import TargetResolver, Transport
from broadcast_reliability.core.logging.logger import clear_task_id, get_logger, set_task_id
from broadcast_reliability.infrastructure.message_queue.priority_lanes import LaneMessage, PriorityLanes
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


# =============================================================================
# LAYER 1: DELIVERY PIPELINE
# The side-effecting part of an attempt, shared with dead-letter recovery
# =============================================================================


class DeliveryPipeline:
    """
    Resolve the target, validate the payload, push it.

    Each step raises on failure; classification happens in the caller.
    The dead-letter store replays records through the same pipeline.
    """

    def __init__(
        self,
        transport: Transport,
        resolver: TargetResolver,
        validator: PayloadValidator | None = None,
        push_timeout: float | None = None,
    ):
        self._transport = transport
        self._resolver = resolver
        self._validator = validator or PayloadValidator()
        self._push_timeout = push_timeout or get_settings().broadcast.BROADCAST_PUSH_TIMEOUT_SECONDS

    async def deliver(self, task: BroadcastTask) -> float:
        """
        Push ``task`` once.

        Returns:
            Wall-clock duration of the attempt in seconds

        Raises:
            TargetNotFoundError: Target no longer exists
            PayloadValidationError: Payload breaks the size/shape limits
            asyncio.TimeoutError: Push exceeded BROADCAST_PUSH_TIMEOUT_SECONDS
            TransportError: Push failed
        """
        started = time.perf_counter()

        await self._resolver.resolve(task.target_type, task.target_id)
        self._validator.ensure_valid(task.payload, task_id=task.task_id)
        await asyncio.wait_for(
            self._transport.push(task.channel, task.target_type, task.target_id, task.payload),
            timeout=self._push_timeout,
        )

        return time.perf_counter() - started


# =============================================================================
# LAYER 2: ATTEMPT STATE MACHINE
# =============================================================================


class BroadcastWorker:
    """
    Executes delivery attempts and reports their outcome.

    Usage:
        worker = BroadcastWorker(pipeline, store, analytics)
        outcome = await worker.attempt(task)
        if isinstance(outcome, Retry):
            await lanes.schedule_retry(task.priority, task.next_attempt().to_dict(), outcome.delay)

    STAGE-ATTEMPT: Delivery attempt
    """

    def __init__(
        self,
        pipeline: DeliveryPipeline,
        store: DeadLetterStore,
        analytics: BroadcastAnalytics,
        max_attempts: int | None = None,
        backoff_max: float | None = None,
        rng: random.Random | None = None,
    ):
        settings = get_settings()

        self._pipeline = pipeline
        self._store = store
        self._analytics = analytics
        self._metrics = get_metrics_collector()
        self._max_attempts = max_attempts or settings.broadcast.BROADCAST_MAX_ATTEMPTS
        self._backoff_max = backoff_max or settings.broadcast.BROADCAST_BACKOFF_MAX_SECONDS
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def calculate_backoff_delay(self, priority: Priority, attempt: int) -> float:
        """
        Delay before attempt ``attempt + 1``.

        Example (medium, base 2s):
            attempt=1: 2s  + up to 1s jitter
            attempt=2: 4s  + up to 2s jitter
            attempt=3: 8s  + up to 4s jitter
        """
        delay = BACKOFF_BASE_SECONDS[priority] * (2 ** (max(attempt, 1) - 1))
        delay += self._rng.uniform(0, BACKOFF_JITTER_RATIO * delay)
        return min(delay, self._backoff_max)

    async def attempt(self, task: BroadcastTask) -> AttemptOutcome:
        """
        Run one delivery attempt.

        Returns:
            Success, Retry(delay) or DeadLetter(error_kind). Terminal failures
            are already stored in the dead-letter store when this returns.

        Raises:
            CacheError: The dead-letter store is unreachable; the lane message
                must stay unacknowledged so it is redelivered
        """
        set_task_id(task.task_id)
        try:
            try:
                duration = await self._pipeline.deliver(task)
            except Exception as e:
                kind = classify(e, {"task_id": task.task_id, "attempt": task.attempt})
                return await self._handle_failure(task, e, kind)

            await self._analytics.record_success(
                task.channel, task.target_type, task.priority, duration, attempt=task.attempt
            )
            self._metrics.record_attempt(task.priority.value, "success")
            self._metrics.record_delivery_duration(task.priority.value, duration)
            return Success(duration=duration, attempt=task.attempt)
        finally:
            clear_task_id()

    async def _handle_failure(
        self, task: BroadcastTask, error: Exception, kind: ErrorKind
    ) -> AttemptOutcome:
        message = str(error) or error.__class__.__name__

        if is_retryable(kind):
            if task.attempt < self._max_attempts:
                delay = self.calculate_backoff_delay(task.priority, task.attempt)
                self._metrics.record_attempt(task.priority.value, "retry")
                logger.info(
                    "Broadcast attempt failed, retrying with backoff",
                    stage=Stage.RETRY_SCHEDULING,
                    task_id=task.task_id,
                    attempt=task.attempt,
                    max_attempts=self._max_attempts,
                    error_kind=kind.value,
                    error=message,
                    delay_seconds=round(delay, 3),
                )
                return Retry(delay=delay, error_kind=kind, error_message=message)

            logger.warning(
                "Broadcast retries exhausted",
                stage=Stage.ATTEMPT,
                task_id=task.task_id,
                attempt=task.attempt,
                last_error_kind=kind.value,
            )
            final_kind = ErrorKind.RETRY_EXHAUSTED
            retry_count = task.attempt
        else:
            final_kind = kind
            retry_count = task.attempt - 1

        record = await self._dead_letter(task, final_kind, message, retry_count)
        return DeadLetter(
            error_kind=final_kind,
            error_message=message,
            retry_count=retry_count,
            record=record,
        )

    async def _dead_letter(
        self,
        task: BroadcastTask,
        kind: ErrorKind,
        message: str,
        retry_count: int,
    ) -> FailedBroadcastRecord:
        self._metrics.record_attempt(task.priority.value, "dead_letter")
        await self._analytics.record_failure(
            task.channel, task.target_type, task.priority, kind, attempt=task.attempt
        )
        return await self._store.create(
            FailedBroadcastRecord(
                channel=task.channel,
                target_type=task.target_type,
                target_id=task.target_id,
                payload=task.payload,
                priority=task.priority,
                error_kind=kind,
                error_message=message,
                retry_count=retry_count,
                task_id=task.task_id,
            )
        )

    # -------------------------------------------------------------------------
    # Runtime-level failures (no task object available)
    # -------------------------------------------------------------------------

    async def handle_job_death(self, message: LaneMessage) -> FailedBroadcastRecord:
        """
        Dead-letter a lane message that was delivered repeatedly but never
        acknowledged. Built from the message snapshot, not from a task.
        """
        error_message = (
            f"Lane message {message.message_id} on {message.lane.name} was delivered "
            f"{message.deliveries} times without acknowledgement"
        )
        return await self._dead_letter_snapshot(message, ErrorKind.JOB_DEATH, error_message)

    async def handle_invalid_message(
        self, message: LaneMessage, error: PayloadValidationError
    ) -> FailedBroadcastRecord:
        """Dead-letter a lane message that cannot be decoded into a task."""
        return await self._dead_letter_snapshot(message, ErrorKind.VALIDATION, error.message)

    async def _dead_letter_snapshot(
        self, message: LaneMessage, kind: ErrorKind, error_message: str
    ) -> FailedBroadcastRecord:
        data = message.data
        priority = Priority.normalize(data.get("priority")) or Priority.MEDIUM
        channel = str(data.get("channel") or "")
        target_type = str(data.get("target_type") or "")

        record = await self._store.create(
            FailedBroadcastRecord(
                channel=channel,
                target_type=target_type,
                target_id=str(data.get("target_id") or ""),
                payload=_snapshot_payload(data, message.fields),
                priority=priority,
                error_kind=kind,
                error_message=error_message,
                retry_count=max(_snapshot_attempt(data) - 1, 0),
                task_id=data.get("task_id") or f"lane:{message.lane.name}:{message.message_id}",
            )
        )

        self._metrics.record_attempt(priority.value, "dead_letter")
        await self._analytics.record_failure(
            channel, target_type, priority, kind, attempt=_snapshot_attempt(data)
        )
        return record


def _snapshot_attempt(data: dict[str, Any]) -> int:
    try:
        return max(int(data.get("attempt") or 1), 1)
    except (TypeError, ValueError):
        return 1


def _snapshot_payload(data: dict[str, Any], fields: dict[str, str]) -> dict[str, Any]:
    payload = data.get("payload")
    if isinstance(payload, dict):
        return payload
    return {"raw": dict(fields)}


# =============================================================================
# LAYER 3: CONSUMER LOOP
# =============================================================================


@dataclass
class WorkerConfig:
    """
    Lane consumer configuration.

    Attributes:
        batch_size: Messages read per poll
        idle_sleep_seconds: Sleep when every lane is empty
        claim_idle_ms: Pending messages idle this long are reclaimed
        max_deliveries: Deliveries before a message counts as a dead job
        scheduler_batch: Due retries promoted per tick
        reaper_interval_seconds: Interval between pending-list sweeps
        error_backoff_seconds: Backoff after consumer loop errors
        shutdown_timeout_seconds: Graceful shutdown timeout
    """

    batch_size: int = 10
    idle_sleep_seconds: float = 0.5
    claim_idle_ms: int = 60_000
    max_deliveries: int = 3
    scheduler_batch: int = 100
    reaper_interval_seconds: float = 30.0
    error_backoff_seconds: float = 5.0
    shutdown_timeout_seconds: float = 5.0

    @classmethod
    def from_settings(cls) -> "WorkerConfig":
        worker = get_settings().worker
        return cls(
            batch_size=worker.WORKER_BATCH_SIZE,
            idle_sleep_seconds=worker.WORKER_IDLE_SLEEP_SECONDS,
            claim_idle_ms=worker.WORKER_CLAIM_IDLE_MS,
            max_deliveries=worker.WORKER_MAX_DELIVERIES,
            scheduler_batch=worker.WORKER_SCHEDULER_BATCH,
            reaper_interval_seconds=worker.WORKER_REAPER_INTERVAL_SECONDS,
        )


class LaneConsumer:
    """
    Pulls lane messages and drives them through the worker.

    Each tick:
        1. Promote retries whose backoff has elapsed
        2. Every reaper interval, reclaim stale messages and dead-letter
           dead jobs
        3. Poll the lanes in weighted order and process the batch

    A message is acknowledged once its outcome is durable: delivered,
    rescheduled, or stored as a dead letter. If handling raises, the
    message stays pending and is redelivered by the reaper.
    """

    def __init__(
        self,
        lanes: PriorityLanes,
        worker: BroadcastWorker,
        config: WorkerConfig | None = None,
        consumer_name: str | None = None,
        clock=time.monotonic,
    ):
        self._lanes = lanes
        self._worker = worker
        self._config = config or WorkerConfig.from_settings()
        self._consumer_name = consumer_name or f"broadcast-worker-{socket.gethostname()}-{id(self)}"
        self._clock = clock
        self._last_reap: float | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def consumer_name(self) -> str:
        return self._consumer_name

    @property
    def config(self) -> WorkerConfig:
        return self._config

    async def start(self) -> None:
        """
        Run until stop() is called.

        Loop errors are logged and followed by a backoff; they never end
        the loop.
        """
        self._running = True
        self._shutdown_event.clear()

        logger.info(
            "Lane consumer started",
            stage=Stage.INITIALIZATION,
            consumer=self._consumer_name,
            batch_size=self._config.batch_size,
        )

        while self._running and not self._shutdown_event.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                logger.info("Lane consumer cancelled", consumer=self._consumer_name)
                break
            except Exception as e:
                logger.error(
                    "Lane consumer error, backing off",
                    stage=Stage.QUEUE,
                    consumer=self._consumer_name,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                await self._sleep(self._config.error_backoff_seconds)

        logger.info("Lane consumer stopped", consumer=self._consumer_name)

    def stop(self) -> None:
        self._running = False
        self._shutdown_event.set()
        logger.info("Lane consumer stop requested", consumer=self._consumer_name)

    async def tick(self) -> int:
        """
        One iteration of the loop.

        Returns:
            Number of lane messages handled
        """
        await self._lanes.promote_due_retries(self._config.scheduler_batch)

        handled = 0
        if self._reap_due():
            handled += await self.reap()

        messages = await self._lanes.poll(self._consumer_name, self._config.batch_size)
        if not messages and not handled:
            await self._sleep(self._config.idle_sleep_seconds)
            return 0

        for index, message in enumerate(messages):
            if self._shutdown_event.is_set():
                logger.info(
                    "Shutdown requested, leaving remaining messages pending",
                    consumer=self._consumer_name,
                    remaining_messages=len(messages) - index,
                )
                break
            await self.process(message)
            handled += 1

        return handled

    async def reap(self) -> int:
        """
        Redeliver stale messages and dead-letter dead jobs.

        A dead job is acknowledged only after its job_death record is stored.
        """
        self._last_reap = self._clock()
        reclaimed, dead = await self._lanes.reap_stale(
            self._consumer_name,
            min_idle_ms=self._config.claim_idle_ms,
            max_deliveries=self._config.max_deliveries,
        )

        for message in dead:
            try:
                await self._worker.handle_job_death(message)
                await self._lanes.ack(message)
            except Exception as e:
                self._log_unacked(message, e, deliveries=message.deliveries)
        for message in reclaimed:
            await self.process(message)

        return len(reclaimed) + len(dead)

    async def process(self, message: LaneMessage) -> AttemptOutcome | None:
        """
        Handle one lane message.

        Returns:
            The attempt outcome, or None when the message was not a valid
            task or handling failed
        """
        try:
            task = BroadcastTask.from_dict(message.data)
        except PayloadValidationError as e:
            try:
                await self._worker.handle_invalid_message(message, e)
                await self._lanes.ack(message)
            except Exception as store_error:
                self._log_unacked(message, store_error)
            return None

        try:
            outcome = await self._worker.attempt(task)
            if isinstance(outcome, Retry):
                await self._lanes.schedule_retry(task.priority, task.next_attempt().to_dict(), outcome.delay)
            await self._lanes.ack(message)
        except Exception as e:
            self._log_unacked(message, e, task_id=task.task_id)
            return None

        return outcome

    def _reap_due(self) -> bool:
        if self._last_reap is None:
            return True
        return self._clock() - self._last_reap >= self._config.reaper_interval_seconds

    def _log_unacked(self, message: LaneMessage, error: Exception, **context) -> None:
        logger.error(
            "Lane message handling failed, leaving it pending",
            stage=Stage.QUEUE,
            consumer=self._consumer_name,
            lane=message.lane.name,
            message_id=message.message_id,
            error=str(error),
            error_type=type(error).__name__,
            **context,
        )

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

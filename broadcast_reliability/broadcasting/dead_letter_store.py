"""
Dead-Letter Store

Durable storage for broadcasts that could not be delivered.

Redis layout:
    dead_letter:seq               INCR counter for record IDs
    dead_letter:record:{id}       hash with the record fields
    dead_letter:task:{task_id}    record ID for the task (idempotent create)
    dead_letter:failed_at         ZSET id → failed_at (age queries, cleanup)
    dead_letter:pending           ZSET id → failed_at (status == pending)
    dead_letter:ready             ZSET id → rank * 1e10 + failed_at
                                  (pending and auto-recoverable only)
    dead_letter:lock:{id}         SET NX EX claim held during a retry

The ready index orders critical before high before medium before low, and
oldest first within a priority, so ``ready_for_retry`` is a single
ZRANGEBYSCORE with LIMIT.
"""

import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any, Protocol

from broadcast_reliability.broadcasting.classifier import classify, describe
from broadcast_reliability.broadcasting.models import BroadcastTask, FailedBroadcastRecord
from broadcast_reliability.core.config.constants import (
    AUTO_RECOVERABLE_KINDS,
    DEAD_LETTER_FAILED_AT_INDEX,
    DEAD_LETTER_LOCK_PREFIX,
    DEAD_LETTER_PENDING_INDEX,
    DEAD_LETTER_READY_INDEX,
    DEAD_LETTER_RECORD_PREFIX,
    DEAD_LETTER_SEQUENCE_KEY,
    DEAD_LETTER_TASK_PREFIX,
    NON_RECOVERABLE_KINDS,
    ErrorKind,
    RecoveryStatus,
    Stage,
)
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.exceptions import (
    ConfigurationError,
    DeadLetterRecordNotFoundError,
    DeadLetterStoreError,
    TargetNotFoundError,
)
from broadcast_reliability.core.interfaces import TargetResolver
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.cache.redis_client import RedisClient, get_redis_client
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

READY_RANK_FACTOR = 1e10


class Deliverer(Protocol):
    async def deliver(self, task: BroadcastTask) -> float:
        """Push ``task`` once; return the duration or raise."""
        ...


def ready_score(record: FailedBroadcastRecord) -> float:
    return record.priority.rank * READY_RANK_FACTOR + record.failed_at


class DeadLetterStore:
    """
    Creates, queries, retries and prunes FailedBroadcastRecords.

    Usage:
        store = DeadLetterStore(redis_client, resolver, deliverer)
        record = await store.create(record)
        for record in await store.ready_for_retry(limit=50):
            await store.retry(record)
    """

    def __init__(
        self,
        redis_client: RedisClient | None = None,
        resolver: TargetResolver | None = None,
        deliverer: Deliverer | None = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()
        self._redis = redis_client or get_redis_client()
        self._resolver = resolver
        self._deliverer = deliverer
        self._clock = clock
        self._metrics = get_metrics_collector()
        self._max_recovery_attempts = settings.recovery.DEAD_LETTER_MAX_RECOVERY_ATTEMPTS
        self._claim_ttl = settings.recovery.DEAD_LETTER_CLAIM_TTL_SECONDS
        self._default_batch = settings.recovery.RECOVERY_BATCH_LIMIT

    # =========================================================================
    # Create / Read
    # =========================================================================

    async def create(self, record: FailedBroadcastRecord) -> FailedBroadcastRecord:
        """
        Persist a new dead-letter record.

        Idempotent per ``task_id``: a second report for the same task returns
        the record created by the first one.

        Records of a kind that is never auto-retried (record_not_found,
        validation) are created as permanently_skipped.
        """
        if record.task_id:
            existing = await self._find_by_task(record.task_id)
            if existing is not None:
                logger.info(
                    "Dead letter already recorded for task",
                    stage=Stage.DEAD_LETTER,
                    task_id=record.task_id,
                    record_id=existing.id,
                )
                return existing

        record.id = await self._redis.incr(DEAD_LETTER_SEQUENCE_KEY)

        if record.task_id:
            claimed = await self._redis.set(
                f"{DEAD_LETTER_TASK_PREFIX}{record.task_id}", str(record.id), nx=True
            )
            if not claimed:
                existing = await self._find_by_task(record.task_id)
                if existing is not None:
                    return existing

        if record.error_kind in NON_RECOVERABLE_KINDS:
            record.status = RecoveryStatus.PERMANENTLY_SKIPPED
            record.recovery_notes = record.recovery_notes or describe(record.error_kind)

        record.updated_at = self._clock()
        await self._save(record)

        self._metrics.record_dead_letter(record.error_kind.value, record.priority.value)
        logger.warning(
            "Broadcast dead-lettered",
            stage=Stage.DEAD_LETTER,
            record_id=record.id,
            task_id=record.task_id,
            channel=record.channel,
            target_type=record.target_type,
            target_id=record.target_id,
            priority=record.priority.value,
            error_kind=record.error_kind.value,
            error_message=record.error_message,
            retry_count=record.retry_count,
            status=record.status.value,
        )
        return record

    async def get(self, record_id: int) -> FailedBroadcastRecord:
        """
        Load a record by ID.

        Raises:
            DeadLetterRecordNotFoundError: If no record has this ID
        """
        data = await self._redis.hgetall(f"{DEAD_LETTER_RECORD_PREFIX}{record_id}")
        if not data:
            raise DeadLetterRecordNotFoundError(
                f"Failed broadcast {record_id} not found", details={"record_id": record_id}
            )
        return FailedBroadcastRecord.from_hash(data)

    async def _find_by_task(self, task_id: str) -> FailedBroadcastRecord | None:
        record_id = await self._redis.get(f"{DEAD_LETTER_TASK_PREFIX}{task_id}")
        if record_id is None:
            return None
        try:
            return await self.get(int(record_id))
        except DeadLetterRecordNotFoundError:
            return None

    async def ready_for_retry(self, limit: int | None = None) -> list[FailedBroadcastRecord]:
        """
        Pending, auto-recoverable records: priority rank first, oldest first.

        Raises:
            CacheError: If Redis is unreachable
        """
        limit = limit or self._default_batch
        record_ids = await self._redis.zrangebyscore(
            DEAD_LETTER_READY_INDEX, "-inf", "+inf", start=0, num=limit
        )

        records = []
        for record_id in record_ids:
            try:
                record = await self.get(int(record_id))
            except DeadLetterRecordNotFoundError:
                await self._redis.zrem(DEAD_LETTER_READY_INDEX, record_id)
                continue
            if record.status is RecoveryStatus.PENDING and record.error_kind in AUTO_RECOVERABLE_KINDS:
                records.append(record)
        return records

    async def recent(
        self,
        limit: int = 20,
        status: RecoveryStatus | None = None,
        error_kind: ErrorKind | None = None,
    ) -> list[FailedBroadcastRecord]:
        """Most recently failed records first, optionally filtered."""
        records: list[FailedBroadcastRecord] = []
        offset = 0
        page = max(limit, 50)

        while len(records) < limit:
            record_ids = await self._redis.zrevrange(
                DEAD_LETTER_FAILED_AT_INDEX, offset, offset + page - 1
            )
            if not record_ids:
                break
            offset += page
            for record_id in record_ids:
                try:
                    record = await self.get(int(record_id))
                except DeadLetterRecordNotFoundError:
                    continue
                if status is not None and record.status is not status:
                    continue
                if error_kind is not None and record.error_kind is not error_kind:
                    continue
                records.append(record)
                if len(records) >= limit:
                    break

        return records

    async def pending_count(self) -> int:
        return await self._redis.zcard(DEAD_LETTER_PENDING_INDEX)

    async def recovery_stats(self, period: timedelta = timedelta(hours=24)) -> dict[str, Any]:
        """
        Summary of records that failed within ``period``.

        Returns:
            total / recovered / pending / permanently_skipped counts,
            recovery_rate (percent), by_error_kind and by_priority breakdowns
        """
        since = self._clock() - period.total_seconds()
        record_ids = await self._redis.zrangebyscore(DEAD_LETTER_FAILED_AT_INDEX, since, "+inf")

        stats: dict[str, Any] = {
            "period_hours": round(period.total_seconds() / 3600, 2),
            "total": 0,
            RecoveryStatus.RECOVERED.value: 0,
            RecoveryStatus.PENDING.value: 0,
            RecoveryStatus.PERMANENTLY_SKIPPED.value: 0,
            "by_error_kind": {},
            "by_priority": {},
        }

        for record_id in record_ids:
            try:
                record = await self.get(int(record_id))
            except DeadLetterRecordNotFoundError:
                continue
            stats["total"] += 1
            stats[record.status.value] += 1
            kinds = stats["by_error_kind"]
            kinds[record.error_kind.value] = kinds.get(record.error_kind.value, 0) + 1
            priorities = stats["by_priority"]
            priorities[record.priority.value] = priorities.get(record.priority.value, 0) + 1

        total = stats["total"]
        stats["recovery_rate"] = (
            round(stats[RecoveryStatus.RECOVERED.value] / total * 100, 2) if total else 0
        )
        return stats

    # =========================================================================
    # Recovery
    # =========================================================================

    async def target_exists(self, record: FailedBroadcastRecord) -> bool:
        """
        Re-check the record's target with the resolver.

        Without a resolver every target is assumed to exist.
        """
        if self._resolver is None:
            return True
        try:
            await self._resolver.resolve(record.target_type, record.target_id)
        except TargetNotFoundError:
            return False
        return True

    async def retry(self, record: FailedBroadcastRecord, manual: bool = False) -> bool:
        """
        Replay a record through the delivery pipeline.

        Success marks the record recovered. Failure reclassifies the error,
        increments ``retry_count`` and updates the same record in place. A
        record that keeps failing is permanently skipped after
        DEAD_LETTER_MAX_RECOVERY_ATTEMPTS recoveries.

        Automatic retries only touch pending records; manual retries accept
        any record that is not already recovered.

        Returns:
            True if the broadcast was delivered, False otherwise (including
            when another process holds the claim on this record)
        """
        if self._deliverer is None:
            raise ConfigurationError("DeadLetterStore.retry requires a deliverer")

        lock_key = f"{DEAD_LETTER_LOCK_PREFIX}{record.id}"
        claimed = await self._redis.set(lock_key, "1", ttl=self._claim_ttl, nx=True)
        if not claimed:
            logger.info(
                "Failed broadcast already being retried",
                stage=Stage.RECOVERY,
                record_id=record.id,
            )
            return False

        try:
            current = await self.get(record.id)
            if current.status is RecoveryStatus.RECOVERED:
                return False
            if not manual and current.status is not RecoveryStatus.PENDING:
                return False

            try:
                await self._deliverer.deliver(current.to_task())
            except Exception as e:
                await self._record_failed_recovery(current, e, manual)
                _sync(record, current)
                return False

            now = self._clock()
            current.status = RecoveryStatus.RECOVERED
            current.recovered_at = now
            current.updated_at = now
            current.recovery_notes = "Manually retried" if manual else "Automatically recovered"
            await self._save(current)
            _sync(record, current)

            logger.info(
                "Failed broadcast recovered",
                stage=Stage.RECOVERY,
                record_id=current.id,
                task_id=current.task_id,
                manual=manual,
                retry_count=current.retry_count,
            )
            return True
        finally:
            await self._redis.delete(lock_key)

    async def _record_failed_recovery(
        self, record: FailedBroadcastRecord, error: Exception, manual: bool
    ) -> None:
        kind = classify(error, {"record_id": record.id})

        record.error_kind = kind
        record.error_message = str(error) or error.__class__.__name__
        record.retry_count += 1
        record.recovery_attempts += 1
        record.updated_at = self._clock()

        if kind in NON_RECOVERABLE_KINDS:
            record.status = RecoveryStatus.PERMANENTLY_SKIPPED
            record.recovery_notes = describe(kind, record.error_message)
        elif record.recovery_attempts >= self._max_recovery_attempts:
            record.status = RecoveryStatus.PERMANENTLY_SKIPPED
            record.recovery_notes = (
                f"Exceeded maximum recovery attempts ({self._max_recovery_attempts})"
            )
        else:
            record.status = RecoveryStatus.PENDING

        await self._save(record)

        logger.warning(
            "Failed broadcast retry failed",
            stage=Stage.RECOVERY,
            record_id=record.id,
            manual=manual,
            error_kind=kind.value,
            error=record.error_message,
            retry_count=record.retry_count,
            status=record.status.value,
        )

    async def update(self, record: FailedBroadcastRecord) -> None:
        """Persist in-place changes to an existing record."""
        if record.id is None:
            raise DeadLetterStoreError("Cannot update a failed broadcast that was never created")
        record.updated_at = self._clock()
        await self._save(record)

    async def mark_not_found(self, record: FailedBroadcastRecord, message: str | None = None) -> None:
        """Mark a record whose target disappeared; it will never be retried."""
        record.error_kind = ErrorKind.RECORD_NOT_FOUND
        record.error_message = message or f"Target {record.target_type}#{record.target_id} no longer exists"
        record.status = RecoveryStatus.PERMANENTLY_SKIPPED
        record.recovery_notes = describe(ErrorKind.RECORD_NOT_FOUND)
        record.updated_at = self._clock()
        await self._save(record)

        logger.info(
            "Failed broadcast target missing",
            stage=Stage.RECOVERY,
            record_id=record.id,
            target_type=record.target_type,
            target_id=record.target_id,
        )

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def cleanup_old(self, older_than: timedelta = timedelta(days=7)) -> int:
        """
        Delete terminal records that failed more than ``older_than`` ago.

        Pending records are never deleted, so running twice is a no-op.

        Returns:
            Number of records deleted
        """
        cutoff = self._clock() - older_than.total_seconds()
        record_ids = await self._redis.zrangebyscore(DEAD_LETTER_FAILED_AT_INDEX, "-inf", f"({cutoff}")

        deleted = 0
        for record_id in record_ids:
            try:
                record = await self.get(int(record_id))
            except DeadLetterRecordNotFoundError:
                await self._remove_from_indexes(record_id)
                continue
            if not record.is_terminal:
                continue

            keys = [f"{DEAD_LETTER_RECORD_PREFIX}{record.id}"]
            if record.task_id:
                keys.append(f"{DEAD_LETTER_TASK_PREFIX}{record.task_id}")
            await self._redis.delete(*keys)
            await self._remove_from_indexes(str(record.id))
            deleted += 1

        logger.info(
            "Old failed broadcasts cleaned",
            stage=Stage.CLEANUP,
            deleted=deleted,
            older_than_days=round(older_than.total_seconds() / 86400, 2),
        )
        return deleted

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    async def _save(self, record: FailedBroadcastRecord) -> None:
        member = str(record.id)
        await self._redis.hset(f"{DEAD_LETTER_RECORD_PREFIX}{member}", mapping=record.to_hash())
        await self._redis.zadd(DEAD_LETTER_FAILED_AT_INDEX, {member: record.failed_at})

        if record.status is RecoveryStatus.PENDING:
            await self._redis.zadd(DEAD_LETTER_PENDING_INDEX, {member: record.failed_at})
        else:
            await self._redis.zrem(DEAD_LETTER_PENDING_INDEX, member)

        if record.status is RecoveryStatus.PENDING and record.error_kind in AUTO_RECOVERABLE_KINDS:
            await self._redis.zadd(DEAD_LETTER_READY_INDEX, {member: ready_score(record)})
        else:
            await self._redis.zrem(DEAD_LETTER_READY_INDEX, member)

    async def _remove_from_indexes(self, member: str) -> None:
        for index in (DEAD_LETTER_FAILED_AT_INDEX, DEAD_LETTER_PENDING_INDEX, DEAD_LETTER_READY_INDEX):
            await self._redis.zrem(index, member)


def _sync(target: FailedBroadcastRecord, source: FailedBroadcastRecord) -> None:
    """Copy the stored state back onto the caller's record object."""
    target.__dict__.update(source.__dict__)

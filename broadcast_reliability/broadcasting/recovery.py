"""
Recovery Sweeper

Periodically replays recoverable dead letters through the delivery pipeline.

Flow:
    1. Fetch ready_for_retry() (critical first, oldest first)
    2. Target gone        → record_not_found, counted as skipped
    3. Otherwise retry()  → successful / failed
    4. Sleep briefly every RECOVERY_PACING_EVERY records
    5. Record {attempted, successful, failed, skipped} as the run summary

One bad record never stops the sweep. Only failing to fetch the batch
propagates to the caller.
"""

import asyncio
import time
from typing import Any

from broadcast_reliability.broadcasting.analytics import BroadcastAnalytics
from broadcast_reliability.broadcasting.classifier import classify
from broadcast_reliability.broadcasting.dead_letter_store import DeadLetterStore
from broadcast_reliability.broadcasting.models import FailedBroadcastRecord
from broadcast_reliability.core.config.constants import NON_RECOVERABLE_KINDS, RecoveryStatus, Stage
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

RECOVERY_JOB = "failed_broadcast_recovery"


class RecoverySweeper:
    def __init__(
        self,
        store: DeadLetterStore,
        analytics: BroadcastAnalytics,
        batch_limit: int | None = None,
        pacing_every: int | None = None,
        pacing_seconds: float | None = None,
    ):
        recovery = get_settings().recovery
        self._store = store
        self._analytics = analytics
        self._metrics = get_metrics_collector()
        self._batch_limit = batch_limit or recovery.RECOVERY_BATCH_LIMIT
        self._pacing_every = pacing_every or recovery.RECOVERY_PACING_EVERY
        self._pacing_seconds = (
            recovery.RECOVERY_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        )

    async def run(self) -> dict[str, int]:
        """
        Run one sweep.

        Returns:
            Counts of attempted, successful, failed and skipped records

        Raises:
            CacheError: The dead-letter store is unreachable
        """
        started = time.perf_counter()
        records = await self._store.ready_for_retry(self._batch_limit)

        stats = {"attempted": 0, "successful": 0, "failed": 0, "skipped": 0}

        logger.info("Recovery sweep started", stage=Stage.RECOVERY, candidates=len(records))

        for index, record in enumerate(records, start=1):
            stats["attempted"] += 1
            result = await self._recover_one(record)
            stats[result] += 1

            if self._pacing_every and index % self._pacing_every == 0 and index < len(records):
                await asyncio.sleep(self._pacing_seconds)

        for result in ("successful", "failed", "skipped"):
            if stats[result]:
                self._metrics.record_recovery_result(result, stats[result])

        await self._analytics.record_housekeeping(RECOVERY_JOB, stats)

        logger.info(
            "Recovery sweep completed",
            stage=Stage.RECOVERY,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            **stats,
        )
        return stats

    async def _recover_one(self, record: FailedBroadcastRecord) -> str:
        try:
            if not await self._store.target_exists(record):
                await self._store.mark_not_found(record)
                return "skipped"

            if await self._store.retry(record, manual=False):
                return "successful"
            return "failed"

        except Exception as e:
            await self._reclassify(record, e)
            return "failed"

    async def _reclassify(self, record: FailedBroadcastRecord, error: Exception) -> None:
        kind = classify(error, {"record_id": record.id})
        logger.error(
            "Recovery of failed broadcast raised",
            stage=Stage.RECOVERY,
            record_id=record.id,
            error_kind=kind.value,
            error=str(error),
            error_type=type(error).__name__,
        )

        record.error_kind = kind
        record.error_message = str(error) or error.__class__.__name__
        if kind in NON_RECOVERABLE_KINDS:
            record.status = RecoveryStatus.PERMANENTLY_SKIPPED
        try:
            await self._store.update(record)
        except Exception as store_error:
            logger.error(
                "Could not store reclassified failed broadcast",
                stage=Stage.RECOVERY,
                record_id=record.id,
                error=str(store_error),
            )


def summarize(stats: dict[str, Any]) -> str:
    return (
        f"attempted={stats.get('attempted', 0)} successful={stats.get('successful', 0)} "
        f"failed={stats.get('failed', 0)} skipped={stats.get('skipped', 0)}"
    )

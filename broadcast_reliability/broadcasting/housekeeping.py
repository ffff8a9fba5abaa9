"""
Housekeeping Sweeper

Two independent cleanup tasks:
    - failed_broadcasts: terminal dead letters older than the retention period
    - analytics: hourly counters older than 24h, daily rollups older than 7d

A failing task is logged and counted in ``errors``; the other task still
runs and the sweep itself never raises.
"""

from datetime import timedelta

from broadcast_reliability.broadcasting.analytics import BroadcastAnalytics
from broadcast_reliability.broadcasting.dead_letter_store import DeadLetterStore
from broadcast_reliability.core.config.constants import Stage
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.logging.logger import get_logger, log_stage
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

HOUSEKEEPING_JOB = "broadcast_housekeeping"


class HousekeepingSweeper:
    def __init__(
        self,
        store: DeadLetterStore,
        analytics: BroadcastAnalytics,
        retention: timedelta | None = None,
    ):
        self._store = store
        self._analytics = analytics
        self._metrics = get_metrics_collector()
        self._retention = retention or timedelta(
            days=get_settings().housekeeping.HOUSEKEEPING_RETENTION_DAYS
        )

    async def run(self) -> dict[str, int]:
        """
        Returns:
            {failed_broadcasts_cleaned, analytics_keys_cleaned, errors}
        """
        summary = {"failed_broadcasts_cleaned": 0, "analytics_keys_cleaned": 0, "errors": 0}

        try:
            summary["failed_broadcasts_cleaned"] = await self._store.cleanup_old(self._retention)
            self._metrics.record_housekeeping_deletions(
                "failed_broadcasts", summary["failed_broadcasts_cleaned"]
            )
        except Exception as e:
            summary["errors"] += 1
            self._task_failed("failed_broadcasts", e)

        try:
            summary["analytics_keys_cleaned"] = await self._analytics.prune_expired()
            self._metrics.record_housekeeping_deletions("analytics", summary["analytics_keys_cleaned"])
        except Exception as e:
            summary["errors"] += 1
            self._task_failed("analytics", e)

        await self._analytics.record_housekeeping(HOUSEKEEPING_JOB, summary)

        log_stage(
            logger,
            Stage.HOUSEKEEPING,
            "Housekeeping completed",
            level="warning" if summary["errors"] else "info",
            **summary,
        )
        return summary

    def _task_failed(self, task: str, error: Exception) -> None:
        self._metrics.record_housekeeping_error(task)
        logger.error(
            "Housekeeping task failed",
            stage=Stage.HOUSEKEEPING,
            task=task,
            error=str(error),
            error_type=type(error).__name__,
        )

"""
Broadcast Analytics Recorder

Hour-bucketed delivery counters kept in Redis hashes:

    broadcast_analytics:{YYYY-MM-DD-HH}:{channel}:{target_type}:{priority}
        queued, success, failure, retried, duration_sum, duration_count,
        error:{kind}

Every event is also folded into a daily rollup
(``broadcast_analytics:daily:{YYYY-MM-DD}:...``). Hourly keys expire after
25 hours, daily keys after 8 days. Both kinds of key are registered in a
sorted-set index scored by bucket start, so pruning reads a score range
instead of scanning the keyspace.

Recording is best effort: a Redis failure is logged and counted, never
raised into the delivery path.
"""

import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import orjson

from broadcast_reliability.core.config.constants import (
    ANALYTICS_BUCKET_INDEX,
    ANALYTICS_DAILY_INDEX,
    ANALYTICS_DAILY_PREFIX,
    ANALYTICS_DAILY_TTL_SECONDS,
    ANALYTICS_DAY_FORMAT,
    ANALYTICS_HOUR_FORMAT,
    ANALYTICS_HOURLY_TTL_SECONDS,
    ANALYTICS_LAST_RUN_PREFIX,
    ANALYTICS_PREFIX,
    LAST_RUN_TTL_SECONDS,
    ErrorKind,
    Priority,
    Stage,
)
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.exceptions import CacheError
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.cache.redis_client import RedisClient, get_redis_client
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

COUNTER_FIELDS = ("queued", "success", "failure", "retried")


def _utc(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def hour_bucket(timestamp: float) -> tuple[str, float]:
    """Return (bucket label, bucket start epoch) for the hour containing ``timestamp``."""
    start = _utc(timestamp).replace(minute=0, second=0, microsecond=0)
    return start.strftime(ANALYTICS_HOUR_FORMAT), start.timestamp()


def day_bucket(timestamp: float) -> tuple[str, float]:
    start = _utc(timestamp).replace(hour=0, minute=0, second=0, microsecond=0)
    return start.strftime(ANALYTICS_DAY_FORMAT), start.timestamp()


def parse_bucket_start(key: str) -> float | None:
    """
    Bucket start epoch encoded in an analytics counter key.

    Returns None for keys that are not counters (indexes, last-run markers).
    """
    parts = key.split(":")
    try:
        if len(parts) >= 5 and parts[0] == ANALYTICS_PREFIX and parts[1] != "daily":
            start = datetime.strptime(parts[1], ANALYTICS_HOUR_FORMAT)
        elif len(parts) >= 6 and f"{parts[0]}:{parts[1]}" == ANALYTICS_DAILY_PREFIX:
            start = datetime.strptime(parts[2], ANALYTICS_DAY_FORMAT)
        else:
            return None
    except ValueError:
        return None
    return start.replace(tzinfo=timezone.utc).timestamp()


class BroadcastAnalytics:
    """
    Records queued/success/failure events and reads windowed metrics.

    Usage:
        analytics = get_analytics()
        await analytics.record_queued("sync_status", "sync_session", Priority.HIGH)
        metrics = await analytics.get_metrics(window_hours=1)
        print(f"Success rate: {metrics['success_rate']}%")
    """

    def __init__(
        self,
        redis_client: RedisClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client or get_redis_client()
        self._clock = clock
        self._metrics = get_metrics_collector()
        self._settings = get_settings()

    # =========================================================================
    # Recording
    # =========================================================================

    async def record_queued(self, channel: str, target_type: str, priority: Priority) -> None:
        await self._increment(channel, target_type, priority, {"queued": 1})

    async def record_success(
        self,
        channel: str,
        target_type: str,
        priority: Priority,
        duration: float,
        attempt: int = 1,
    ) -> None:
        """
        Record a delivered broadcast.

        ``retried`` counts deliveries that needed more than one attempt.
        """
        counters = {"success": 1}
        if attempt > 1:
            counters["retried"] = 1
        await self._increment(channel, target_type, priority, counters, duration=duration)

        logger.info(
            "Broadcast delivered",
            stage=Stage.ANALYTICS,
            channel=channel,
            target_type=target_type,
            priority=priority.value,
            attempt=attempt,
            duration=round(duration, 3),
        )

    async def record_failure(
        self,
        channel: str,
        target_type: str,
        priority: Priority,
        error_kind: ErrorKind,
        attempt: int = 1,
    ) -> None:
        await self._increment(
            channel,
            target_type,
            priority,
            {"failure": 1, f"error:{error_kind.value}": 1},
        )

        logger.warning(
            "Broadcast failed",
            stage=Stage.ANALYTICS,
            channel=channel,
            target_type=target_type,
            priority=priority.value,
            attempt=attempt,
            error_kind=error_kind.value,
        )

    async def record_housekeeping(self, job: str, stats: dict[str, Any]) -> None:
        """
        Store the summary of a sweep run as ``last_run`` for ``job``.

        The marker expires after 24 hours.
        """
        summary = {**stats, "completed_at": self._clock()}
        try:
            await self._redis.set(
                f"{ANALYTICS_LAST_RUN_PREFIX}:{job}",
                orjson.dumps(summary).decode("utf-8"),
                ttl=LAST_RUN_TTL_SECONDS,
            )
        except CacheError as e:
            self._storage_failed("record_housekeeping", e, job=job)

    async def last_run(self, job: str) -> dict[str, Any] | None:
        try:
            raw = await self._redis.get(f"{ANALYTICS_LAST_RUN_PREFIX}:{job}")
        except CacheError as e:
            self._storage_failed("last_run", e, job=job)
            return None
        return orjson.loads(raw) if raw else None

    async def _increment(
        self,
        channel: str,
        target_type: str,
        priority: Priority,
        counters: dict[str, int],
        duration: float | None = None,
    ) -> None:
        now = self._clock()
        hour_label, hour_start = hour_bucket(now)
        day_label, day_start = day_bucket(now)
        suffix = f"{channel}:{target_type}:{priority.value}"

        buckets = (
            (f"{ANALYTICS_PREFIX}:{hour_label}:{suffix}", ANALYTICS_BUCKET_INDEX,
             hour_start, ANALYTICS_HOURLY_TTL_SECONDS),
            (f"{ANALYTICS_DAILY_PREFIX}:{day_label}:{suffix}", ANALYTICS_DAILY_INDEX,
             day_start, ANALYTICS_DAILY_TTL_SECONDS),
        )

        try:
            for key, index, start, ttl in buckets:
                for name, amount in counters.items():
                    await self._redis.hincrby(key, name, amount)
                if duration is not None:
                    await self._redis.hincrbyfloat(key, "duration_sum", duration)
                    await self._redis.hincrby(key, "duration_count", 1)
                await self._redis.expire(key, ttl)
                await self._redis.zadd(index, {key: start}, nx=True)
        except CacheError as e:
            self._storage_failed("record", e, channel=channel, counters=list(counters))

    def _storage_failed(self, operation: str, error: Exception, **context) -> None:
        self._metrics.record_storage_error("analytics")
        logger.warning(
            "Analytics storage failed",
            stage=Stage.ANALYTICS,
            operation=operation,
            error=str(error),
            **context,
        )

    # =========================================================================
    # Reading
    # =========================================================================

    async def get_metrics(
        self,
        window_hours: int = 1,
        channel: str | None = None,
    ) -> dict[str, Any]:
        """
        Aggregate the hourly buckets of the last ``window_hours`` hours.

        Args:
            window_hours: Window length; the current (partial) hour is included
            channel: Restrict to one channel

        Returns:
            Totals plus success_rate / failure_rate (percent, 2 d.p.) and
            avg_duration (seconds, 3 d.p.)
        """
        now = self._clock()
        _, current_start = hour_bucket(now)
        window_start = current_start - (max(window_hours, 1) - 1) * 3600

        totals: dict[str, Any] = {name: 0 for name in COUNTER_FIELDS}
        by_error_kind: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        duration_sum = 0.0
        duration_count = 0

        try:
            keys = await self._redis.zrangebyscore(ANALYTICS_BUCKET_INDEX, window_start, "+inf")
            for key in keys:
                # Channel names may hold ":"; target_type and priority never do
                parts = key.split(":")
                if channel is not None and (len(parts) < 5 or ":".join(parts[2:-2]) != channel):
                    continue
                data = await self._redis.hgetall(key)
                if not data:
                    continue
                for name in COUNTER_FIELDS:
                    totals[name] += int(data.get(name, 0))
                for field_name, value in data.items():
                    if field_name.startswith("error:"):
                        kind = field_name.split(":", 1)[1]
                        by_error_kind[kind] = by_error_kind.get(kind, 0) + int(value)
                priority = parts[-1]
                by_priority[priority] = by_priority.get(priority, 0) + int(data.get("queued", 0))
                duration_sum += float(data.get("duration_sum", 0.0))
                duration_count += int(data.get("duration_count", 0))
        except CacheError as e:
            self._storage_failed("get_metrics", e, window_hours=window_hours)

        attempts = totals["success"] + totals["failure"]
        totals.update(
            {
                "window_hours": window_hours,
                "channel": channel,
                "success_rate": round(totals["success"] / attempts * 100, 2) if attempts else 0,
                "failure_rate": round(totals["failure"] / attempts * 100, 2) if attempts else 0,
                "avg_duration": round(duration_sum / duration_count, 3) if duration_count else 0.0,
                "by_error_kind": by_error_kind,
                "queued_by_priority": by_priority,
            }
        )
        return totals

    async def get_dashboard_metrics(self) -> dict[str, Any]:
        """Last hour and last 24 hours side by side."""
        last_hour = await self.get_metrics(window_hours=1)
        last_day = await self.get_metrics(window_hours=24)
        return {
            "current": {
                "success_rate": last_hour["success_rate"],
                "failure_rate": last_hour["failure_rate"],
                "average_duration": last_hour["avg_duration"],
                "total_broadcasts": last_hour["success"] + last_hour["failure"],
            },
            "last_24_hours": {
                "success_rate_24h": last_day["success_rate"],
                "failure_rate_24h": last_day["failure_rate"],
                "average_duration_24h": last_day["avg_duration"],
                "total_broadcasts_24h": last_day["success"] + last_day["failure"],
            },
            "queued_by_priority": last_day["queued_by_priority"],
            "errors_by_kind": last_day["by_error_kind"],
        }

    # =========================================================================
    # Pruning
    # =========================================================================

    async def prune_expired(self) -> int:
        """
        Delete counters whose bucket lies beyond its horizon.

        Reads the bucket indexes. With ANALYTICS_SCAN_FALLBACK_ENABLED set, a
        bounded SCAN then catches keys written before the indexes existed.

        Returns:
            Number of counter keys deleted

        Raises:
            CacheError: If Redis is unreachable
        """
        now = self._clock()
        housekeeping = self._settings.housekeeping
        _, current_hour = hour_bucket(now)
        _, current_day = day_bucket(now)
        hourly_cutoff = current_hour - housekeeping.ANALYTICS_HOURLY_HORIZON_HOURS * 3600
        daily_cutoff = current_day - timedelta(
            days=housekeeping.ANALYTICS_DAILY_HORIZON_DAYS
        ).total_seconds()

        deleted = 0
        for index, cutoff in (
            (ANALYTICS_BUCKET_INDEX, hourly_cutoff),
            (ANALYTICS_DAILY_INDEX, daily_cutoff),
        ):
            stale = await self._redis.zrangebyscore(index, "-inf", f"({cutoff}")
            if stale:
                deleted += await self._redis.delete(*stale)
                await self._redis.zrem(index, *stale)

        if housekeeping.ANALYTICS_SCAN_FALLBACK_ENABLED:
            deleted += await self._prune_unindexed(hourly_cutoff, daily_cutoff)

        logger.info("Analytics counters pruned", stage=Stage.HOUSEKEEPING, deleted=deleted)
        return deleted

    async def _prune_unindexed(self, hourly_cutoff: float, daily_cutoff: float) -> int:
        limit = self._settings.housekeeping.ANALYTICS_SCAN_FALLBACK_LIMIT
        if limit <= 0:
            return 0

        started = time.perf_counter()
        keys = await self._redis.scan_keys(f"{ANALYTICS_PREFIX}:*", count=200, limit=limit)

        stale = []
        for key in keys:
            start = parse_bucket_start(key)
            if start is None:
                continue
            cutoff = daily_cutoff if key.startswith(f"{ANALYTICS_DAILY_PREFIX}:") else hourly_cutoff
            if start < cutoff:
                stale.append(key)

        deleted = await self._redis.delete(*stale) if stale else 0

        logger.warning(
            "Analytics SCAN fallback used",
            stage=Stage.HOUSEKEEPING,
            keys_visited=len(keys),
            deleted=deleted,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return deleted


_analytics: BroadcastAnalytics | None = None


def get_analytics() -> BroadcastAnalytics:
    """Get the global analytics recorder."""
    global _analytics
    if _analytics is None:
        _analytics = BroadcastAnalytics()
    return _analytics

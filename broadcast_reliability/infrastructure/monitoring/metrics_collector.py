#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

Process-local view of broadcast delivery, complementing the Redis-backed
hourly analytics:
- Enqueue counts by priority
- Attempt outcomes and delivery latency
- Dead letters by error kind
- Recovery and housekeeping results
- Lane depth and produce counters

Architectural Decision: prometheus-client for industry-standard metrics
- Scraped from the API process at /metrics
- Histogram buckets for latency percentiles
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# Dispatch metrics
BROADCASTS_ENQUEUED = Counter(
    'broadcast_enqueued_total',
    'Total broadcasts accepted by the dispatcher',
    ['priority', 'lane']
)

# Attempt metrics
ATTEMPTS = Counter(
    'broadcast_attempts_total',
    'Delivery attempts by outcome',
    ['priority', 'outcome']  # success, retry, dead_letter
)

DELIVERY_DURATION = Histogram(
    'broadcast_delivery_duration_seconds',
    'Duration of successful delivery attempts',
    ['priority'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# Dead-letter metrics
DEAD_LETTERS = Counter(
    'broadcast_dead_letters_total',
    'Dead-letter records created by error kind',
    ['error_kind', 'priority']
)

# Recovery metrics
RECOVERY_RESULTS = Counter(
    'broadcast_recovery_results_total',
    'Recovery sweep results',
    ['result']  # successful, failed, skipped
)

# Housekeeping metrics
HOUSEKEEPING_DELETIONS = Counter(
    'broadcast_housekeeping_deletions_total',
    'Keys and records removed by housekeeping',
    ['target']  # failed_broadcasts, analytics_keys
)

HOUSEKEEPING_ERRORS = Counter(
    'broadcast_housekeeping_errors_total',
    'Housekeeping sub-task failures',
    ['task']
)

# Queue metrics
QUEUE_PRODUCE_ATTEMPTS = Counter(
    'broadcast_queue_produce_attempts_total',
    'Total lane produce attempts',
    ['lane']
)

QUEUE_PRODUCE_FAILURES = Counter(
    'broadcast_queue_produce_failures_total',
    'Total failed lane produces',
    ['lane', 'reason']
)

QUEUE_DEPTH = Gauge(
    'broadcast_lane_depth',
    'Current lane depth',
    ['lane']
)

QUEUE_BACKPRESSURE_RETRIES = Counter(
    'broadcast_queue_backpressure_retries_total',
    'Total backpressure retry attempts',
    ['lane']
)

# Rate limiting metrics
RATE_LIMITED = Counter(
    'broadcast_rate_limited_total',
    'Broadcasts rejected by the rate limiter',
    ['priority', 'scope']  # global, caller
)

# Storage errors swallowed by best-effort writers
STORAGE_ERRORS = Counter(
    'broadcast_storage_errors_total',
    'Best-effort storage writes that failed',
    ['component']
)

APP_INFO = Info(
    'broadcast_app',
    'Application information'
)


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = get_metrics_collector()
        metrics.record_attempt("high", "success")
        metrics.record_dead_letter("validation", "low")
    """

    def __init__(self):
        self.settings = get_settings()

        APP_INFO.info({
            'version': self.settings.app.APP_VERSION,
            'environment': self.settings.app.ENVIRONMENT,
            'app_name': self.settings.app.APP_NAME
        })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Dispatch / Attempt Metrics
    # =========================================================================

    def record_enqueued(self, priority: str, lane: str) -> None:
        BROADCASTS_ENQUEUED.labels(priority=priority, lane=lane).inc()

    def record_attempt(self, priority: str, outcome: str) -> None:
        ATTEMPTS.labels(priority=priority, outcome=outcome).inc()

    def record_delivery_duration(self, priority: str, duration_seconds: float) -> None:
        DELIVERY_DURATION.labels(priority=priority).observe(duration_seconds)

    # =========================================================================
    # Dead Letter / Recovery / Housekeeping
    # =========================================================================

    def record_dead_letter(self, error_kind: str, priority: str) -> None:
        DEAD_LETTERS.labels(error_kind=error_kind, priority=priority).inc()

    def record_recovery_result(self, result: str, count: int = 1) -> None:
        if count:
            RECOVERY_RESULTS.labels(result=result).inc(count)

    def record_housekeeping_deletions(self, target: str, count: int) -> None:
        if count:
            HOUSEKEEPING_DELETIONS.labels(target=target).inc(count)

    def record_housekeeping_error(self, task: str) -> None:
        HOUSEKEEPING_ERRORS.labels(task=task).inc()

    def record_storage_error(self, component: str) -> None:
        STORAGE_ERRORS.labels(component=component).inc()

    def record_rate_limited(self, priority: str, scope: str) -> None:
        RATE_LIMITED.labels(priority=priority, scope=scope).inc()

    # =========================================================================
    # Queue Metrics
    # =========================================================================

    def record_queue_produce_attempt(self, lane: str) -> None:
        QUEUE_PRODUCE_ATTEMPTS.labels(lane=lane).inc()

    def record_queue_produce_failure(self, lane: str, reason: str) -> None:
        QUEUE_PRODUCE_FAILURES.labels(lane=lane, reason=reason).inc()

    def record_queue_depth(self, lane: str, depth: int) -> None:
        QUEUE_DEPTH.labels(lane=lane).set(depth)

    def record_queue_backpressure_retry(self, lane: str) -> None:
        QUEUE_BACKPRESSURE_RETRIES.labels(lane=lane).inc()

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics

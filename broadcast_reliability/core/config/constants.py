"""
System Constants and Enumerations

This module defines the enumerations and fixed tables shared by the
dispatcher, the worker, the dead-letter store and the sweepers.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for lane names, weights and backoff bases
- Type-safe enums for priorities, error kinds and record status
- Redis key layout documented in one place
"""

from dataclasses import dataclass
from enum import Enum

# ============================================================================
# Stage Identifiers (for structured logging)
# ============================================================================


class Stage(str, Enum):
    """
    Processing stages used as the ``stage`` field of log entries.

    Format: {SEQUENCE}_{DESCRIPTIVE_NAME}
    """

    INITIALIZATION = "0.0_INITIALIZATION"
    DISPATCH = "1.0_DISPATCH"
    LANE_WRITE = "1.1_LANE_WRITE"
    RATE_LIMITING = "1.2_RATE_LIMITING"
    ATTEMPT = "2.0_ATTEMPT"
    TARGET_RESOLUTION = "2.1_TARGET_RESOLUTION"
    PAYLOAD_VALIDATION = "2.2_PAYLOAD_VALIDATION"
    TRANSPORT_PUSH = "2.3_TRANSPORT_PUSH"
    RETRY_SCHEDULING = "2.4_RETRY_SCHEDULING"
    JOB_DEATH = "2.5_JOB_DEATH"
    DEAD_LETTER = "3.0_DEAD_LETTER"
    RECOVERY = "4.0_RECOVERY"
    HOUSEKEEPING = "5.0_HOUSEKEEPING"
    CLEANUP = "6.0_CLEANUP"

    ANALYTICS = "A_ANALYTICS"
    QUEUE = "Q_PRIORITY_LANES"
    METRICS = "M_METRICS_COLLECTION"


# ============================================================================
# Domain Enumerations
# ============================================================================


class Priority(str, Enum):
    """Delivery priority of a broadcast."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Ordering rank: critical=0 < high=1 < medium=2 < low=3."""
        return PRIORITY_RANKS[self]

    @classmethod
    def normalize(cls, value: "Priority | str | None") -> "Priority | None":
        """
        Map a raw priority value onto the enum.

        Returns None for values outside the enum so callers can decide how
        to log the fallback.
        """
        if isinstance(value, Priority):
            return value
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class ErrorKind(str, Enum):
    """Terminal or transient classification of a failed attempt."""

    CONNECTION = "connection"
    RECORD_NOT_FOUND = "record_not_found"
    VALIDATION = "validation"
    JOB_DEATH = "job_death"
    RETRY_EXHAUSTED = "retry_exhausted"
    UNKNOWN = "unknown"


class RecoveryStatus(str, Enum):
    """Lifecycle state of a dead-letter record."""

    PENDING = "pending"
    RECOVERED = "recovered"
    PERMANENTLY_SKIPPED = "permanently_skipped"


PRIORITY_RANKS: dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}

# Base delay (seconds) for the first retry; doubled per attempt.
BACKOFF_BASE_SECONDS: dict[Priority, float] = {
    Priority.CRITICAL: 0.5,
    Priority.HIGH: 1.0,
    Priority.MEDIUM: 2.0,
    Priority.LOW: 4.0,
}

BACKOFF_JITTER_RATIO = 0.5

# Kinds the recovery sweeper may replay.
AUTO_RECOVERABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.CONNECTION, ErrorKind.UNKNOWN, ErrorKind.RETRY_EXHAUSTED}
)

# Kinds that are never replayed automatically.
NON_RECOVERABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.RECORD_NOT_FOUND, ErrorKind.VALIDATION}
)

TERMINAL_STATUSES: frozenset[RecoveryStatus] = frozenset(
    {RecoveryStatus.RECOVERED, RecoveryStatus.PERMANENTLY_SKIPPED}
)


# ============================================================================
# Priority Lanes
# ============================================================================


@dataclass(frozen=True)
class Lane:
    """A named lane and its share of worker attention."""

    name: str
    weight: int

    @property
    def stream_key(self) -> str:
        return f"{LANE_KEY_PREFIX}{self.name}"


LANE_KEY_PREFIX = "broadcast:lane:"

LANE_TABLE: dict[Priority, Lane] = {
    Priority.CRITICAL: Lane(name="critical", weight=6),
    Priority.HIGH: Lane(name="high", weight=4),
    Priority.MEDIUM: Lane(name="default", weight=2),
    Priority.LOW: Lane(name="low", weight=1),
}

LANES: tuple[Lane, ...] = tuple(LANE_TABLE.values())


# ============================================================================
# Rate Limits
# ============================================================================


@dataclass(frozen=True)
class BucketLimit:
    """Token bucket sizing: ``requests`` per window, plus ``burst`` headroom."""

    requests: int
    burst: int

    @property
    def capacity(self) -> int:
        return self.requests + self.burst


# Per caller and priority
RATE_LIMITS: dict[Priority, BucketLimit] = {
    Priority.CRITICAL: BucketLimit(requests=100, burst=20),
    Priority.HIGH: BucketLimit(requests=50, burst=10),
    Priority.MEDIUM: BucketLimit(requests=30, burst=5),
    Priority.LOW: BucketLimit(requests=10, burst=2),
}


# ============================================================================
# Redis Key Layout
# ============================================================================

SCHEDULED_RETRIES_KEY = "broadcast:scheduled"
RATE_LIMIT_KEY_PREFIX = "broadcast:rate_limit:"

DEAD_LETTER_SEQUENCE_KEY = "dead_letter:seq"
DEAD_LETTER_RECORD_PREFIX = "dead_letter:record:"
DEAD_LETTER_READY_INDEX = "dead_letter:ready"
DEAD_LETTER_FAILED_AT_INDEX = "dead_letter:failed_at"
DEAD_LETTER_PENDING_INDEX = "dead_letter:pending"
DEAD_LETTER_TASK_PREFIX = "dead_letter:task:"
DEAD_LETTER_LOCK_PREFIX = "dead_letter:lock:"

ANALYTICS_PREFIX = "broadcast_analytics"
ANALYTICS_BUCKET_INDEX = "broadcast_analytics:buckets"
ANALYTICS_DAILY_INDEX = "broadcast_analytics:daily_buckets"
ANALYTICS_DAILY_PREFIX = "broadcast_analytics:daily"
ANALYTICS_LAST_RUN_PREFIX = "broadcast_analytics:last_run"
ANALYTICS_HOUR_FORMAT = "%Y-%m-%d-%H"
ANALYTICS_DAY_FORMAT = "%Y-%m-%d"
ANALYTICS_HOURLY_TTL_SECONDS = 25 * 3600
ANALYTICS_DAILY_TTL_SECONDS = 8 * 24 * 3600
LAST_RUN_TTL_SECONDS = 24 * 3600

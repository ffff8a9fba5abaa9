"""
Broadcast Rate Limiter

Token buckets in Redis hashes, checked before a broadcast reaches its lane:

    broadcast:rate_limit:global                      every caller
    broadcast:rate_limit:caller:{identifier}:{priority}

A bucket refills at ``requests / window`` tokens per second up to
``requests + burst`` and a new bucket starts with ``requests`` tokens. Both
buckets must hold a whole token before either is charged.

Buckets are read and written without a transaction, so concurrent callers
can overshoot a limit by a few requests. A Redis failure lets the broadcast
through: losing the limiter must not stop delivery.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from broadcast_reliability.core.config.constants import (
    RATE_LIMIT_KEY_PREFIX,
    RATE_LIMITS,
    BucketLimit,
    Priority,
    Stage,
)
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.exceptions import CacheError, RateLimitExceededError
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.cache.redis_client import RedisClient, get_redis_client
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

GLOBAL_SCOPE = "global"
CALLER_SCOPE = "caller"


@dataclass
class BucketState:
    key: str
    scope: str
    limit: BucketLimit
    tokens: float

    @property
    def allowed(self) -> bool:
        return self.tokens >= 1


class BroadcastRateLimiter:
    """
    Usage:
        limiter = BroadcastRateLimiter()
        await limiter.acquire(Priority.HIGH, identifier="user:7")  # raises when limited
    """

    def __init__(
        self,
        redis_client: RedisClient | None = None,
        clock: Callable[[], float] = time.time,
        limits: dict[Priority, BucketLimit] | None = None,
        global_limit: BucketLimit | None = None,
    ):
        settings = get_settings().rate_limit
        self._redis = redis_client or get_redis_client()
        self._clock = clock
        self._limits = limits or RATE_LIMITS
        self._global_limit = global_limit or BucketLimit(
            requests=settings.RATE_LIMIT_GLOBAL_REQUESTS, burst=settings.RATE_LIMIT_GLOBAL_BURST
        )
        self._window = settings.RATE_LIMIT_WINDOW_SECONDS
        self._bypass_critical = settings.RATE_LIMIT_BYPASS_CRITICAL
        self._metrics = get_metrics_collector()

    async def _read(self, key: str, scope: str, limit: BucketLimit, now: float) -> BucketState:
        data = await self._redis.hgetall(key)
        if not data:
            return BucketState(key=key, scope=scope, limit=limit, tokens=float(limit.requests))

        tokens = float(data.get("tokens", limit.requests))
        elapsed = max(now - float(data.get("updated_at", now)), 0.0)
        tokens = min(tokens + elapsed * limit.requests / self._window, float(limit.capacity))
        return BucketState(key=key, scope=scope, limit=limit, tokens=tokens)

    async def _charge(self, bucket: BucketState, now: float) -> None:
        await self._redis.hset(bucket.key, mapping={"tokens": bucket.tokens - 1, "updated_at": now})
        await self._redis.expire(bucket.key, self._window * 2)

    def retry_after(self, bucket: BucketState) -> int:
        """Whole seconds until ``bucket`` holds one token again."""
        missing = max(1 - bucket.tokens, 0.0)
        return max(math.ceil(missing * self._window / bucket.limit.requests), 1)

    async def acquire(self, priority: Priority, identifier: str | None = None) -> None:
        """
        Take one token for a broadcast.

        Without an identifier only the global bucket is checked. Critical broadcasts
        skip every bucket when RATE_LIMIT_BYPASS_CRITICAL is set.

        Raises:
            RateLimitExceededError: A bucket is empty; nothing was charged
        """
        if priority == Priority.CRITICAL and self._bypass_critical:
            return

        now = self._clock()
        try:
            buckets = [
                await self._read(f"{RATE_LIMIT_KEY_PREFIX}{GLOBAL_SCOPE}", GLOBAL_SCOPE, self._global_limit, now)
            ]
            if identifier:
                buckets.append(
                    await self._read(
                        f"{RATE_LIMIT_KEY_PREFIX}{CALLER_SCOPE}:{identifier}:{priority.value}",
                        CALLER_SCOPE,
                        self._limits[priority],
                        now,
                    )
                )

            for bucket in buckets:
                if not bucket.allowed:
                    self._reject(bucket, priority, identifier)

            for bucket in buckets:
                await self._charge(bucket, now)

        except CacheError as e:
            self._metrics.record_storage_error("rate_limiter")
            logger.warning(
                "Rate limiter unavailable, allowing broadcast",
                stage=Stage.RATE_LIMITING,
                priority=priority.value,
                error=str(e),
            )

    def _reject(self, bucket: BucketState, priority: Priority, identifier: str | None) -> None:
        retry_after = self.retry_after(bucket)
        self._metrics.record_rate_limited(priority.value, bucket.scope)
        logger.warning(
            "Broadcast rate limited",
            stage=Stage.RATE_LIMITING,
            scope=bucket.scope,
            identifier=identifier,
            priority=priority.value,
            retry_after=retry_after,
        )
        raise RateLimitExceededError(
            f"{bucket.scope.capitalize()} rate limit exceeded for {priority.value} priority. "
            f"Try again in {retry_after} seconds",
            retry_after=retry_after,
            scope=bucket.scope,
            priority=priority.value,
        )


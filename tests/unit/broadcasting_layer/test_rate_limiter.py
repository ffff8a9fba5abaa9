"""
Unit Tests for the Broadcast Rate Limiter

Token buckets per caller and priority plus the global bucket, refill over
time, and the fail-open path when Redis is down.
"""

from unittest.mock import AsyncMock

import pytest

from broadcast_reliability.broadcasting.rate_limiter import BroadcastRateLimiter
from broadcast_reliability.core.config.constants import RATE_LIMITS, BucketLimit, Priority
from broadcast_reliability.core.config.settings import reload_settings
from broadcast_reliability.core.exceptions import CacheConnectionError, RateLimitExceededError

GLOBAL_KEY = "broadcast:rate_limit:global"


async def _drain(limiter, priority, identifier, count):
    for _ in range(count):
        await limiter.acquire(priority, identifier)


@pytest.mark.unit
class TestCallerBuckets:
    @pytest.mark.asyncio
    async def test_new_bucket_allows_requests_per_window(self, rate_limiter):
        await _drain(rate_limiter, Priority.LOW, "user:7", RATE_LIMITS[Priority.LOW].requests)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await rate_limiter.acquire(Priority.LOW, "user:7")

        assert exc_info.value.scope == "caller"
        assert exc_info.value.priority == "low"
        # 10 requests per 60 seconds refill one token every 6 seconds
        assert exc_info.value.retry_after == 6
        assert exc_info.value.to_dict()["details"]["retry_after"] == 6

    @pytest.mark.asyncio
    async def test_bucket_refills_over_time(self, rate_limiter, clock):
        await _drain(rate_limiter, Priority.LOW, "user:7", 10)

        clock.advance(6)
        await rate_limiter.acquire(Priority.LOW, "user:7")

        with pytest.raises(RateLimitExceededError):
            await rate_limiter.acquire(Priority.LOW, "user:7")

    @pytest.mark.asyncio
    async def test_refill_is_capped_at_requests_plus_burst(self, rate_limiter, clock):
        await rate_limiter.acquire(Priority.LOW, "user:7")
        clock.advance(3600)

        await _drain(rate_limiter, Priority.LOW, "user:7", RATE_LIMITS[Priority.LOW].capacity)

        with pytest.raises(RateLimitExceededError):
            await rate_limiter.acquire(Priority.LOW, "user:7")

    @pytest.mark.asyncio
    async def test_priorities_and_callers_are_separate(self, rate_limiter):
        await _drain(rate_limiter, Priority.LOW, "user:7", 10)

        await rate_limiter.acquire(Priority.HIGH, "user:7")
        await rate_limiter.acquire(Priority.LOW, "user:8")

    @pytest.mark.asyncio
    async def test_bucket_keys_expire(self, rate_limiter, redis):
        await rate_limiter.acquire(Priority.CRITICAL, "user:7")

        assert redis.ttls["broadcast:rate_limit:caller:user:7:critical"] == 120
        assert redis.ttls[GLOBAL_KEY] == 120


@pytest.mark.unit
class TestGlobalBucket:
    @pytest.fixture
    def limiter(self, redis, clock):
        return BroadcastRateLimiter(redis, clock=clock, global_limit=BucketLimit(requests=2, burst=0))

    @pytest.mark.asyncio
    async def test_global_bucket_applies_without_identifier(self, limiter):
        await _drain(limiter, Priority.CRITICAL, None, 2)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire(Priority.CRITICAL)

        assert exc_info.value.scope == "global"
        assert exc_info.value.retry_after == 30

    @pytest.mark.asyncio
    async def test_rejection_charges_no_bucket(self, redis, clock):
        limiter = BroadcastRateLimiter(
            redis, clock=clock, limits={**RATE_LIMITS, Priority.LOW: BucketLimit(requests=1, burst=0)}
        )
        await limiter.acquire(Priority.LOW, "user:7")
        global_tokens = redis.hashes[GLOBAL_KEY]["tokens"]

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire(Priority.LOW, "user:7")

        assert redis.hashes[GLOBAL_KEY]["tokens"] == global_tokens


@pytest.mark.unit
class TestRedisFailure:
    @pytest.mark.asyncio
    async def test_unreachable_redis_allows_broadcast(self, rate_limiter, redis):
        redis.hgetall = AsyncMock(side_effect=CacheConnectionError("down"))

        await rate_limiter.acquire(Priority.HIGH, "user:7")

    @pytest.mark.asyncio
    async def test_failed_charge_allows_broadcast(self, rate_limiter, redis):
        redis.hset = AsyncMock(side_effect=CacheConnectionError("down"))

        await rate_limiter.acquire(Priority.HIGH, "user:7")


@pytest.mark.unit
class TestCriticalBypass:
    @pytest.fixture
    def limiter(self, redis, clock, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_BYPASS_CRITICAL", "true")
        reload_settings()
        try:
            return BroadcastRateLimiter(redis, clock=clock, global_limit=BucketLimit(requests=1, burst=0))
        finally:
            monkeypatch.delenv("RATE_LIMIT_BYPASS_CRITICAL")
            reload_settings()

    @pytest.mark.asyncio
    async def test_critical_skips_every_bucket(self, limiter, redis):
        await _drain(limiter, Priority.CRITICAL, "user:7", 5)

        assert GLOBAL_KEY not in redis.hashes

    @pytest.mark.asyncio
    async def test_other_priorities_still_limited(self, limiter):
        await limiter.acquire(Priority.HIGH, "user:7")

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire(Priority.HIGH, "user:7")

    @pytest.mark.asyncio
    async def test_bypass_is_off_by_default(self, redis, clock):
        limiter = BroadcastRateLimiter(redis, clock=clock, global_limit=BucketLimit(requests=1, burst=0))
        await limiter.acquire(Priority.CRITICAL)

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire(Priority.CRITICAL)

"""
Unit Tests for the Target Resolvers
"""

from unittest.mock import AsyncMock

import pytest

from broadcast_reliability.broadcasting.resolvers import RegistryTargetResolver, redis_presence_lookup
from broadcast_reliability.core.exceptions import TargetNotFoundError


@pytest.mark.unit
class TestRegistryTargetResolver:
    @pytest.mark.asyncio
    async def test_registered_lookup(self, resolver):
        assert await resolver.resolve("sync_session", "42") is True

    @pytest.mark.asyncio
    async def test_missing_target(self, resolver):
        with pytest.raises(TargetNotFoundError) as exc_info:
            await resolver.resolve("sync_session", "99")

        assert exc_info.value.target_id == "99"

    @pytest.mark.asyncio
    async def test_unregistered_type_rejected_by_default(self):
        with pytest.raises(TargetNotFoundError):
            await RegistryTargetResolver().resolve("team", "1")

    @pytest.mark.asyncio
    async def test_unregistered_type_allowed(self):
        assert await RegistryTargetResolver(allow_unregistered=True).resolve("team", "1") == "1"

    def test_target_types(self):
        resolver = RegistryTargetResolver({"user": AsyncMock()})
        resolver.register("sync_session", AsyncMock())

        assert resolver.target_types == ["sync_session", "user"]


@pytest.mark.unit
class TestRedisPresenceLookup:
    @pytest.mark.asyncio
    async def test_key_presence(self, redis):
        await redis.set("user:7", "online")
        resolver = RegistryTargetResolver({"user": redis_presence_lookup(redis, "user:{target_id}")})

        assert await resolver.resolve("user", "7") is True
        with pytest.raises(TargetNotFoundError):
            await resolver.resolve("user", "8")

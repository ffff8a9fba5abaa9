"""
Target Resolvers

The worker checks that a broadcast target still exists before pushing.
Targets live in the host application's data model, so the lookups are
registered per target type by whoever embeds the service:

    resolver = RegistryTargetResolver()
    resolver.register("sync_session", load_sync_session)
    resolver.register("user", redis_presence_lookup(redis_client, "user:{target_id}"))
"""

from collections.abc import Awaitable, Callable
from typing import Any

from broadcast_reliability.core.config.constants import Stage
from broadcast_reliability.core.exceptions import TargetNotFoundError
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.cache.redis_client import RedisClient

logger = get_logger(__name__)

TargetLookup = Callable[[str], Awaitable[Any]]


class RegistryTargetResolver:
    """
    Resolves targets through a registry of async lookups.

    A lookup returning None (or anything falsy) means the target is gone.
    Unregistered target types are rejected unless ``allow_unregistered``.
    """

    def __init__(
        self,
        lookups: dict[str, TargetLookup] | None = None,
        allow_unregistered: bool = False,
    ):
        self._lookups: dict[str, TargetLookup] = dict(lookups or {})
        self._allow_unregistered = allow_unregistered

    def register(self, target_type: str, lookup: TargetLookup) -> None:
        self._lookups[target_type] = lookup

    @property
    def target_types(self) -> list[str]:
        return sorted(self._lookups)

    async def resolve(self, target_type: str, target_id: str) -> Any:
        """
        Return the looked-up target.

        Raises:
            TargetNotFoundError: Lookup returned nothing, or the type is not registered
        """
        lookup = self._lookups.get(target_type)
        if lookup is None:
            if self._allow_unregistered:
                return target_id
            logger.warning(
                "No lookup registered for target type",
                stage=Stage.TARGET_RESOLUTION,
                target_type=target_type,
            )
            raise TargetNotFoundError(target_type, target_id)

        target = await lookup(target_id)
        if not target:
            raise TargetNotFoundError(target_type, target_id)
        return target


def redis_presence_lookup(redis_client: RedisClient, key_template: str) -> TargetLookup:
    """
    Lookup that treats a target as present while a Redis key exists.

    ``key_template`` is formatted with ``target_id``.
    """

    async def _lookup(target_id: str) -> bool:
        return bool(await redis_client.exists(key_template.format(target_id=target_id)))

    return _lookup

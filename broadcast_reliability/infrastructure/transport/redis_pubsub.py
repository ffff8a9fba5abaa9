"""
Redis Pub/Sub Transport

Pushes broadcast frames to connected clients through Redis Pub/Sub. The
web tier subscribes to one channel per target and forwards frames to its
websocket/SSE connections.

Channel Format:
    {prefix}:{channel}:{target_type}:{target_id}
    e.g. broadcast:sync_status:sync_session:42

Frame:
    {"channel": ..., "target_type": ..., "target_id": ..., "data": {...}, "sent_at": 1700000000.0}
"""

import time
from typing import Any

import orjson

from broadcast_reliability.core.config.constants import Stage
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.exceptions import (
    CacheConnectionError,
    CacheKeyError,
    TransportConnectionError,
    TransportError,
)
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.cache.redis_client import RedisClient, get_redis_client

logger = get_logger(__name__)


class RedisPubSubTransport:
    """
    Transport implementation backed by Redis PUBLISH.

    Usage:
        transport = RedisPubSubTransport()
        await transport.push("sync_status", "sync_session", "42", {"progress": 80})
    """

    def __init__(self, redis_client: RedisClient | None = None, channel_prefix: str | None = None):
        self._redis = redis_client or get_redis_client()
        self._prefix = channel_prefix or get_settings().broadcast.BROADCAST_CHANNEL_PREFIX

    def get_channel_name(self, channel: str, target_type: str, target_id: str) -> str:
        return f"{self._prefix}:{channel}:{target_type}:{target_id}"

    async def push(
        self,
        channel: str,
        target_type: str,
        target_id: str,
        payload: dict[str, Any],
    ) -> None:
        """
        Publish one frame.

        Raises:
            orjson.JSONEncodeError: Payload is not JSON serializable
            TransportConnectionError: Redis unreachable
            TransportError: Redis rejected the PUBLISH
        """
        pubsub_channel = self.get_channel_name(channel, target_type, target_id)
        frame = orjson.dumps(
            {
                "channel": channel,
                "target_type": target_type,
                "target_id": target_id,
                "data": payload,
                "sent_at": time.time(),
            }
        ).decode("utf-8")

        try:
            receivers = await self._redis.publish(pubsub_channel, frame)
        except CacheConnectionError as e:
            raise TransportConnectionError.from_exception(
                e, message=f"Publish to {pubsub_channel} failed", channel=pubsub_channel
            ) from e
        except CacheKeyError as e:
            raise TransportError.from_exception(
                e, message=f"Publish to {pubsub_channel} rejected", channel=pubsub_channel
            ) from e

        logger.debug(
            "Broadcast frame published",
            stage=Stage.TRANSPORT_PUSH,
            channel=pubsub_channel,
            receivers=receivers,
        )

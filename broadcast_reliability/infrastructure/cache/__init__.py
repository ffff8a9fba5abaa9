"""
Cache Module

Async Redis client shared by the lanes, the dead-letter store and analytics.
"""

from .redis_client import (
    RedisClient,
    close_redis,
    get_redis_client,
)

__all__ = [
    "RedisClient",
    "get_redis_client",
    "close_redis",
]

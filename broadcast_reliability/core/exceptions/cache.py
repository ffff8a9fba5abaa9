"""
Cache-Related Exceptions

All exceptions raised by the Redis client wrapper.
"""

from broadcast_reliability.core.exceptions.base import BroadcastReliabilityError


class CacheError(BroadcastReliabilityError):
    """Base exception for Redis storage errors."""
    pass


class CacheConnectionError(CacheError):
    """
    Raised when Redis cannot be reached.

    Common causes:
    - Redis server is down
    - Network connectivity issues
    - Socket timeout
    """
    pass


class CacheKeyError(CacheError):
    """
    Raised when a Redis command fails for reasons other than connectivity.

    Common causes:
    - Wrong type for the key (WRONGTYPE)
    - Memory limit exceeded
    """
    pass

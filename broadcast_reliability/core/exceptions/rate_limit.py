"""
Rate Limiting Exceptions

Raised by the broadcast rate limiter before a task reaches its lane.
"""

from broadcast_reliability.core.exceptions.base import BroadcastReliabilityError


class RateLimitError(BroadcastReliabilityError):
    """Base exception for rate limiting errors."""
    pass


class RateLimitExceededError(RateLimitError):
    """
    Raised when a broadcast would exceed its token bucket.

    Callers should wait ``retry_after`` seconds before enqueueing again;
    the API returns it as the Retry-After header.
    """

    def __init__(self, message: str, retry_after: int, scope: str, priority: str):
        super().__init__(
            message,
            details={"retry_after": retry_after, "scope": scope, "priority": priority},
        )
        self.retry_after = retry_after
        self.scope = scope
        self.priority = priority

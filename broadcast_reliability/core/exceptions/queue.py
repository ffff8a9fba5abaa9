"""
Message Queue Exceptions

All exceptions related to the priority lanes.
"""

from broadcast_reliability.core.exceptions.base import BroadcastReliabilityError


class QueueError(BroadcastReliabilityError):
    """Base exception for lane errors."""
    pass


class QueueFullError(QueueError):
    """
    Raised when a lane stays at its maximum depth after backpressure retries.

    Callers should back off and retry later.
    """
    pass


class QueueConsumerError(QueueError):
    """
    Raised when the lane consumer cannot read or acknowledge messages.

    Common causes:
    - Consumer group creation failure
    - Connection to Redis lost
    """
    pass

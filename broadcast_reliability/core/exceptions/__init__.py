"""
Exception Module

Structured exception hierarchy for the broadcast reliability service.

Module Structure:
-----------------
- **base.py**: BroadcastReliabilityError base class + ConfigurationError
- **cache.py**: Redis storage exceptions
- **queue.py**: Priority lane exceptions
- **broadcast.py**: Delivery, transport and dead-letter exceptions
- **rate_limit.py**: Rate limiter rejections
"""

from broadcast_reliability.core.exceptions.base import (
    BroadcastReliabilityError,
    ConfigurationError,
)
from broadcast_reliability.core.exceptions.broadcast import (
    BroadcastError,
    DeadLetterRecordNotFoundError,
    DeadLetterStoreError,
    PayloadValidationError,
    TargetNotFoundError,
    TransportConnectionError,
    TransportError,
)
from broadcast_reliability.core.exceptions.cache import (
    CacheConnectionError,
    CacheError,
    CacheKeyError,
)
from broadcast_reliability.core.exceptions.queue import (
    QueueConsumerError,
    QueueError,
    QueueFullError,
)
from broadcast_reliability.core.exceptions.rate_limit import (
    RateLimitError,
    RateLimitExceededError,
)

__all__ = [
    # Base
    "BroadcastReliabilityError",
    "ConfigurationError",
    # Cache
    "CacheError",
    "CacheConnectionError",
    "CacheKeyError",
    # Queue
    "QueueError",
    "QueueFullError",
    "QueueConsumerError",
    # Rate limiting
    "RateLimitError",
    "RateLimitExceededError",
    # Broadcast
    "BroadcastError",
    "TransportError",
    "TransportConnectionError",
    "TargetNotFoundError",
    "PayloadValidationError",
    "DeadLetterStoreError",
    "DeadLetterRecordNotFoundError",
]

"""
Core Module

Foundational components: configuration, logging, exceptions and the
collaborator interfaces the delivery pipeline depends on.
"""

from .exceptions import (
    BroadcastReliabilityError,
    CacheConnectionError,
    CacheError,
    CacheKeyError,
    ConfigurationError,
    DeadLetterRecordNotFoundError,
    DeadLetterStoreError,
    PayloadValidationError,
    QueueError,
    QueueFullError,
    RateLimitExceededError,
    TargetNotFoundError,
    TransportConnectionError,
    TransportError,
)
from .logging import (
    clear_task_id,
    get_logger,
    get_task_id,
    log_stage,
    set_task_id,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "set_task_id",
    "get_task_id",
    "clear_task_id",
    "log_stage",
    "BroadcastReliabilityError",
    "ConfigurationError",
    "CacheError",
    "CacheConnectionError",
    "CacheKeyError",
    "QueueError",
    "QueueFullError",
    "RateLimitExceededError",
    "TransportError",
    "TransportConnectionError",
    "TargetNotFoundError",
    "PayloadValidationError",
    "DeadLetterStoreError",
    "DeadLetterRecordNotFoundError",
]

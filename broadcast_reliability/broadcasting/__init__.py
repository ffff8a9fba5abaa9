"""
Broadcasting Module

Dispatch, delivery attempts, dead-letter storage, recovery and
housekeeping for real-time broadcasts.
"""

from .dispatcher import PriorityDispatcher, enqueue_broadcast
from .models import (
    BroadcastTask,
    DeadLetter,
    FailedBroadcastRecord,
    Retry,
    Success,
)
from .service import (
    BroadcastReliabilityService,
    get_broadcast_service,
    start_lane_consumer,
    stop_lane_consumer,
)

__all__ = [
    "BroadcastTask",
    "FailedBroadcastRecord",
    "Success",
    "Retry",
    "DeadLetter",
    "PriorityDispatcher",
    "enqueue_broadcast",
    "BroadcastReliabilityService",
    "get_broadcast_service",
    "start_lane_consumer",
    "stop_lane_consumer",
]

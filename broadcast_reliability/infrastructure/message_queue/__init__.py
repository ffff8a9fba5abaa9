"""
Message Queue Package

Weighted priority lanes on Redis Streams with delayed retries.
"""

from .priority_lanes import LaneMessage, PriorityLanes, get_priority_lanes

__all__ = [
    "PriorityLanes",
    "LaneMessage",
    "get_priority_lanes",
]

"""
Core Interfaces Module

Protocols for the collaborators injected into the delivery pipeline.
"""

from broadcast_reliability.core.interfaces.collaborators import (
    LaneIntrospector,
    TargetResolver,
    Transport,
)

__all__ = [
    "LaneIntrospector",
    "TargetResolver",
    "Transport",
]

"""
API Dependencies

FastAPI dependency providers. Tests replace them through
``app.dependency_overrides``.
"""

from broadcast_reliability.broadcasting.service import (
    BroadcastReliabilityService,
    get_broadcast_service,
)


def get_service() -> BroadcastReliabilityService:
    return get_broadcast_service()

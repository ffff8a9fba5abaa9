"""
API Models

Pydantic request/response models for the operational API.
"""

from .broadcasts import (
    BroadcastStatusResponse,
    EnqueueBroadcastRequest,
    EnqueueBroadcastResponse,
    FailedBroadcastListResponse,
    FailedBroadcastResponse,
    RetryFailedBroadcastResponse,
    SweepResponse,
)

__all__ = [
    "BroadcastStatusResponse",
    "EnqueueBroadcastRequest",
    "EnqueueBroadcastResponse",
    "FailedBroadcastListResponse",
    "FailedBroadcastResponse",
    "RetryFailedBroadcastResponse",
    "SweepResponse",
]

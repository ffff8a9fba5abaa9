"""
Broadcast API Models

Request and response bodies for the /broadcasts operational endpoints.
Dead-letter records are exposed as-is; timestamps stay epoch seconds so
they compare directly with the values stored in Redis.
"""

from typing import Any

from pydantic import BaseModel, Field

from broadcast_reliability.broadcasting.models import FailedBroadcastRecord


class EnqueueBroadcastRequest(BaseModel):
    """Body of POST /broadcasts."""

    channel: str = Field(..., min_length=1, max_length=200, description="Logical broadcast channel")
    target_type: str = Field(..., min_length=1, max_length=100, description="Kind of target, e.g. sync_session")
    target_id: str | int = Field(..., description="Identifier of the target")
    data: dict[str, Any] = Field(default_factory=dict, description="JSON payload pushed to clients")
    priority: str = Field(
        default="medium",
        description="critical, high, medium or low; anything else is treated as medium",
    )


class EnqueueBroadcastResponse(BaseModel):
    task_id: str
    priority: str
    lane: str


class FailedBroadcastResponse(BaseModel):
    """A dead-letter record."""

    id: int
    channel: str
    target_type: str
    target_id: str
    payload: dict[str, Any]
    priority: str
    error_kind: str
    error_message: str
    failed_at: float
    retry_count: int = Field(..., ge=0)
    task_id: str | None = None
    status: str
    recovery_attempts: int = Field(default=0, ge=0)
    recovered_at: float | None = None
    recovery_notes: str | None = None
    updated_at: float | None = None

    @classmethod
    def from_record(cls, record: FailedBroadcastRecord) -> "FailedBroadcastResponse":
        return cls(**record.to_dict())


class FailedBroadcastListResponse(BaseModel):
    items: list[FailedBroadcastResponse]
    count: int = Field(..., ge=0)


class RetryFailedBroadcastResponse(BaseModel):
    """Result of a manual retry."""

    recovered: bool
    record: FailedBroadcastResponse


class BroadcastStatusResponse(BaseModel):
    lanes: dict[str, int] = Field(..., description="Current length of each priority lane")
    scheduled_retries: int = Field(..., ge=0)
    pending_failed_broadcasts: int = Field(..., ge=0)
    metrics: dict[str, Any] = Field(..., description="Analytics for the current hour")
    last_recovery: dict[str, Any] | None = None
    last_housekeeping: dict[str, Any] | None = None


class SweepResponse(BaseModel):
    job: str
    stats: dict[str, int]

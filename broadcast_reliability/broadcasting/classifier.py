"""
Outcome Classifier

Maps an exception raised during a delivery attempt onto an ErrorKind. The
worker, the dead-letter store and the recovery sweeper all decide
retry-versus-terminal from this one function.

    classify(TransportConnectionError(...))  -> ErrorKind.CONNECTION
    classify(TargetNotFoundError(...))       -> ErrorKind.RECORD_NOT_FOUND
    classify(PayloadValidationError(...))    -> ErrorKind.VALIDATION
    classify(RuntimeError(...))              -> ErrorKind.UNKNOWN
"""

import asyncio
from typing import Any

import orjson
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from broadcast_reliability.core.config.constants import ErrorKind, Stage
from broadcast_reliability.core.exceptions import (
    CacheConnectionError,
    PayloadValidationError,
    TargetNotFoundError,
    TransportConnectionError,
)
from broadcast_reliability.core.logging.logger import get_logger

logger = get_logger(__name__)

CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    TransportConnectionError,
    CacheConnectionError,
    RedisConnectionError,
    RedisTimeoutError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

NOT_FOUND_ERRORS: tuple[type[BaseException], ...] = (TargetNotFoundError,)

VALIDATION_ERRORS: tuple[type[BaseException], ...] = (
    PayloadValidationError,
    PydanticValidationError,
    orjson.JSONEncodeError,
)

RETRYABLE_KINDS = frozenset({ErrorKind.CONNECTION, ErrorKind.UNKNOWN})

_DESCRIPTIONS: dict[ErrorKind, str] = {
    ErrorKind.CONNECTION: "Connection or network failure while pushing the broadcast",
    ErrorKind.RECORD_NOT_FOUND: "Broadcast target no longer exists",
    ErrorKind.VALIDATION: "Broadcast payload failed validation",
    ErrorKind.JOB_DEATH: "Worker died or abandoned the broadcast before acknowledging it",
    ErrorKind.RETRY_EXHAUSTED: "Broadcast failed on every allowed attempt",
    ErrorKind.UNKNOWN: "Unexpected error while delivering the broadcast",
}


def classify(error: Any, context: dict[str, Any] | None = None) -> ErrorKind:
    """
    Classify an attempt failure.

    Args:
        error: The exception raised by the attempt (anything is accepted)
        context: Optional log context (task_id, channel, ...)

    Returns:
        ErrorKind; UNKNOWN for None, non-exceptions and unrecognised errors
    """
    try:
        if not isinstance(error, BaseException):
            return ErrorKind.UNKNOWN
        if isinstance(error, NOT_FOUND_ERRORS):
            return ErrorKind.RECORD_NOT_FOUND
        if isinstance(error, VALIDATION_ERRORS):
            return ErrorKind.VALIDATION
        if isinstance(error, CONNECTION_ERRORS):
            return ErrorKind.CONNECTION
        return ErrorKind.UNKNOWN
    except Exception as e:  # isinstance on exotic inputs
        logger.warning(
            "Error classification failed",
            stage=Stage.ATTEMPT,
            error=str(e),
            **(context or {}),
        )
        return ErrorKind.UNKNOWN


def is_retryable(kind: ErrorKind) -> bool:
    """Whether an attempt that failed with ``kind`` may be retried on the lane."""
    return kind in RETRYABLE_KINDS


def is_terminal(kind: ErrorKind) -> bool:
    return not is_retryable(kind)


def describe(kind: ErrorKind, message: str | None = None) -> str:
    """Human-readable description of an error kind, with the raw message appended."""
    description = _DESCRIPTIONS.get(kind, _DESCRIPTIONS[ErrorKind.UNKNOWN])
    if message:
        return f"{description}: {message}"
    return description

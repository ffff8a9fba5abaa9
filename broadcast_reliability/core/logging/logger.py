#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides structured logging for the broadcast reliability
service with:
- Task ID correlation across dispatcher, worker and recovery logs
- Stage tags for the delivery pipeline
- JSON formatting for log aggregation
- Automatic PII redaction (broadcast payloads can carry user data)
"""

import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, WrappedLogger

from broadcast_reliability.core.config.settings import get_settings

# Context variable for the broadcast task being processed
task_id_ctx: ContextVar[str | None] = ContextVar("task_id", default=None)


def add_task_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add task ID to log event from context variable.

    STAGE-L.1: Task ID injection
    """
    task_id = task_id_ctx.get()
    if task_id and "task_id" not in event_dict:
        event_dict["task_id"] = task_id
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def redact_pii(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact PII from log messages.

    STAGE-L.3: PII redaction

    Patterns redacted:
    - Email addresses → [EMAIL]
    - API keys (sk-...) → [REDACTED]
    - Phone numbers → [PHONE]
    """
    message = event_dict.get("event", "")

    if isinstance(message, str):
        message = re.sub(r"\b[\w.-]+@[\w.-]+\.\w+\b", "[EMAIL]", message)
        message = re.sub(r"\bsk-[a-zA-Z0-9]+\b", "[REDACTED]", message)
        message = re.sub(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b", "[PHONE]", message)
        event_dict["event"] = message

    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Uppercase the level field.

    STAGE-L.4: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
    """
    settings = get_settings()

    log_level = log_level or settings.logging.LOG_LEVEL
    log_format = log_format or settings.logging.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_task_id,
            add_timestamp,
            structlog.stdlib.add_log_level,
            add_log_level_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_pii,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("message", key="value", stage=Stage.ATTEMPT)
    """
    return structlog.get_logger(name)


def set_task_id(task_id: str) -> None:
    """Set the task ID for log correlation in the current context."""
    task_id_ctx.set(task_id)


def get_task_id() -> str | None:
    return task_id_ctx.get()


def clear_task_id() -> None:
    """
    Clear task ID from context.

    STAGE-6: Task context cleanup
    """
    task_id_ctx.set(None)


def log_stage(
    logger: structlog.stdlib.BoundLogger, stage: str, message: str, level: str = "info", **kwargs
) -> None:
    """
    Log a message with stage information.

    Args:
        logger: Logger instance
        stage: Stage identifier (e.g., Stage.RECOVERY)
        message: Log message
        level: Log level (debug, info, warning, error, critical)
        **kwargs: Additional fields to log
    """
    log_func = getattr(logger, level.lower())
    log_func(message, stage=stage, **kwargs)

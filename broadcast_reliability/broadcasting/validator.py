"""
Broadcast Payload Validator

Rejects payloads that would be expensive or unsafe to fan out to clients.

VALIDATION RULES:
-----------------
1. Serialized size at most MAX_DATA_SIZE bytes (warning above 80%)
2. Nesting depth at most MAX_NESTING_DEPTH
3. Every string (and dict key) at most MAX_STRING_LENGTH characters
4. Every list (and dict) at most MAX_ARRAY_SIZE entries
5. No script-injection patterns in string values

All problems are collected before raising, so a single
PayloadValidationError lists everything wrong with the payload.
"""

import re
from dataclasses import dataclass, field
from re import Pattern
from typing import Any

import orjson

from broadcast_reliability.core.config.constants import Stage
from broadcast_reliability.core.exceptions import PayloadValidationError
from broadcast_reliability.core.logging.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    data_size: int = 0

    @property
    def valid(self) -> bool:
        return not self.errors


class PayloadValidator:
    """
    Validates broadcast payloads before they are pushed.

    Usage:
        validator = PayloadValidator()
        validator.ensure_valid(payload, task_id=task.task_id)
    """

    MAX_DATA_SIZE = 1024 * 1024
    MAX_STRING_LENGTH = 10_000
    MAX_ARRAY_SIZE = 1_000
    MAX_NESTING_DEPTH = 10
    SIZE_WARNING_RATIO = 0.8

    SECURITY_PATTERNS: list[tuple[Pattern, str]] = [
        (re.compile(r"<script\b[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL), "script tag"),
        (re.compile(r"javascript:", re.IGNORECASE), "javascript protocol"),
        (re.compile(r"vbscript:", re.IGNORECASE), "vbscript protocol"),
        (re.compile(r"<\w+[^>]*\bon\w+\s*=", re.IGNORECASE), "inline event handler"),
        (re.compile(r"\beval\s*\(", re.IGNORECASE), "eval call"),
        (re.compile(r"data:text/html", re.IGNORECASE), "HTML data URL"),
        (re.compile(r"<(iframe|object|embed)\b", re.IGNORECASE), "embedded frame"),
    ]

    def __init__(
        self,
        max_data_size: int = MAX_DATA_SIZE,
        max_string_length: int = MAX_STRING_LENGTH,
        max_array_size: int = MAX_ARRAY_SIZE,
        max_nesting_depth: int = MAX_NESTING_DEPTH,
    ):
        self.max_data_size = max_data_size
        self.max_string_length = max_string_length
        self.max_array_size = max_array_size
        self.max_nesting_depth = max_nesting_depth

    def validate(self, payload: Any) -> ValidationResult:
        """
        Collect every rule violation in ``payload``.

        Returns:
            ValidationResult (never raises)
        """
        result = ValidationResult()

        if not isinstance(payload, dict):
            result.errors.append(
                f"payload must be a JSON object, got {type(payload).__name__}"
            )
            return result

        try:
            result.data_size = len(orjson.dumps(payload))
        except (orjson.JSONEncodeError, TypeError) as e:
            result.errors.append(f"payload is not JSON serializable: {e}")
            return result

        if result.data_size > self.max_data_size:
            result.errors.append(
                f"Data size too large: {result.data_size} bytes > {self.max_data_size} bytes"
            )
        elif result.data_size > self.max_data_size * self.SIZE_WARNING_RATIO:
            result.warnings.append(
                f"Data size approaching limit: {result.data_size} bytes "
                f"({result.data_size / self.max_data_size:.1%} of limit)"
            )

        depth = self._nesting_depth(payload)
        if depth > self.max_nesting_depth:
            result.errors.append(f"Data structure too deep: {depth} > {self.max_nesting_depth}")

        self._walk(payload, "data", result)
        return result

    def ensure_valid(self, payload: Any, task_id: str | None = None) -> None:
        """
        Raise if ``payload`` breaks any rule.

        Raises:
            PayloadValidationError: With the full error list in ``details``
        """
        result = self.validate(payload)

        for warning in result.warnings:
            logger.warning(
                "Payload validation warning",
                stage=Stage.PAYLOAD_VALIDATION,
                task_id=task_id,
                warning=warning,
            )

        if not result.valid:
            raise PayloadValidationError(
                result.errors[0],
                task_id=task_id,
                details={"errors": result.errors, "data_size": result.data_size},
            )

    def _nesting_depth(self, data: Any, current: int = 0) -> int:
        if isinstance(data, dict):
            if not data:
                return current
            return max(self._nesting_depth(value, current + 1) for value in data.values())
        if isinstance(data, list):
            if not data:
                return current
            return max(self._nesting_depth(item, current + 1) for item in data)
        return current

    def _walk(self, data: Any, path: str, result: ValidationResult) -> None:
        if isinstance(data, dict):
            if len(data) > self.max_array_size:
                result.errors.append(
                    f"Hash too large at {path}: {len(data)} > {self.max_array_size}"
                )
            for key, value in data.items():
                if isinstance(key, str) and len(key) > self.max_string_length:
                    result.errors.append(
                        f"Hash key too long at {path}: {len(key)} > {self.max_string_length}"
                    )
                self._walk(value, f"{path}.{key}", result)
        elif isinstance(data, list):
            if len(data) > self.max_array_size:
                result.errors.append(
                    f"Array too large at {path}: {len(data)} > {self.max_array_size}"
                )
            for index, item in enumerate(data):
                self._walk(item, f"{path}[{index}]", result)
        elif isinstance(data, str):
            if len(data) > self.max_string_length:
                result.errors.append(
                    f"String too long at {path}: {len(data)} > {self.max_string_length}"
                )
            for pattern, description in self.SECURITY_PATTERNS:
                if pattern.search(data):
                    result.errors.append(f"Suspicious content at {path}: {description}")

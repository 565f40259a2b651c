"""Shared error codes and exceptions for the feature flag service.

Evaluation never raises these to its caller (it fails closed); the
management path raises them so callers know a write did not persist.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_CONFLICT = "DUPLICATE_CONFLICT"
    STORE_ERROR = "STORE_ERROR"
    CACHE_UNAVAILABLE = "CACHE_UNAVAILABLE"  # never surfaced, used for logs/metrics


class FeatureFlagError(Exception):
    """Base error for flag management operations."""

    code: ErrorCode = ErrorCode.STORE_ERROR

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return build_error(self.code, self.message, **self.context)


class ValidationFailedError(FeatureFlagError):
    code = ErrorCode.VALIDATION_FAILED


class FlagNotFoundError(FeatureFlagError):
    code = ErrorCode.NOT_FOUND


class DuplicateConflictError(FeatureFlagError):
    code = ErrorCode.DUPLICATE_CONFLICT


class DuplicateNameError(DuplicateConflictError):
    """A flag with the same name already exists."""


class DuplicateEntryError(DuplicateConflictError):
    """The user already has a whitelist entry for this flag."""


class StoreError(FeatureFlagError):
    code = ErrorCode.STORE_ERROR


def build_error(
    code: ErrorCode,
    message: str,
    detail: Optional[str] = None,
    **context: Any,
) -> Dict[str, Any]:
    """Build the structured error body returned by the HTTP layer."""
    body: Dict[str, Any] = {"code": code.value, "message": message}
    if detail:
        body["detail"] = detail
    if context:
        body["context"] = context
    return body


__all__ = [
    "ErrorCode",
    "FeatureFlagError",
    "ValidationFailedError",
    "FlagNotFoundError",
    "DuplicateConflictError",
    "DuplicateNameError",
    "DuplicateEntryError",
    "StoreError",
    "build_error",
]

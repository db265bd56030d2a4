"""Error taxonomy for the rules core with user-friendly messages.

NotFound is deliberately absent: an absent entity is a normal outcome and is
returned as a tagged result (see models.rules.NotFound), never raised.
"""
from __future__ import annotations

import json
import sys
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class RulesCoreError(Exception):
    """Base class for rules-core errors with user-friendly messaging."""

    def __init__(self, error_type: str, message: str, details: str = "", is_retryable: bool = False):
        self.error_type = error_type
        self.message = message
        self.details = details
        self.is_retryable = is_retryable
        super().__init__(self.message)

    def get_user_message(self) -> str:
        """Return a user-friendly error message."""
        msg = f"\nError: {self.message}"
        if self.details:
            msg += f"\n   Details: {self.details}"
        if self.is_retryable:
            msg += "\n   Tip: This is a temporary issue. Please retry in a few moments."
        return msg


class ValidationFailure(RulesCoreError):
    """Rule metadata violates one or more invariants. Nothing was applied."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            error_type="VALIDATION_FAILED",
            message="Rule metadata is invalid",
            details="; ".join(self.errors),
            is_retryable=False,
        )


class TransportFailure(RulesCoreError):
    """Remote store unreachable, malformed response, or non-2xx other than 404.

    This is the only error class that triggers local fallback in RuleStore
    and stale-serving in MetricsCache.
    """

    def __init__(self, details: str = "", status_code: Optional[int] = None, is_retryable: bool = True):
        self.status_code = status_code
        super().__init__(
            error_type="TRANSPORT_FAILED",
            message="Remote store request failed",
            details=details,
            is_retryable=is_retryable,
        )


class LocalStoreFailure(RulesCoreError):
    """The local replica could not be read or written (e.g. disk full)."""

    def __init__(self, details: str = ""):
        super().__init__(
            error_type="LOCAL_STORE_FAILED",
            message="Local rule replica is unavailable",
            details=details,
            is_retryable=False,
        )


class UnsupportedCategoryError(RulesCoreError):
    """Unknown rule category type."""

    def __init__(self, category: str):
        super().__init__(
            error_type="UNSUPPORTED_CATEGORY",
            message=f"Unsupported rule type: {category}",
            details="Expected one of: delta, reconciliation, transformation",
            is_retryable=False,
        )


def handle_transport_error(error: Exception) -> TransportFailure:
    """Convert httpx / decoding exceptions into a TransportFailure."""
    if isinstance(error, TransportFailure):
        return error

    if isinstance(error, httpx.TimeoutException):
        return TransportFailure(details=f"Request timed out: {error}", is_retryable=True)

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        detail = ""
        try:
            body = error.response.json()
            if isinstance(body, dict):
                detail = str(body.get("detail") or "")
        except (json.JSONDecodeError, ValueError):
            pass
        return TransportFailure(
            details=detail or f"HTTP {status}",
            status_code=status,
            is_retryable=status >= 500,
        )

    if isinstance(error, httpx.TransportError):
        return TransportFailure(details=f"Connection failed: {error}", is_retryable=True)

    if isinstance(error, (json.JSONDecodeError, ValueError)):
        return TransportFailure(details=f"Malformed response: {error}"[:200], is_retryable=False)

    return TransportFailure(details=str(error)[:200], is_retryable=False)


def exit_with_error(error: RulesCoreError, context: str = "") -> int:
    """Log error and exit gracefully with user-friendly message."""
    logger.error(
        "command_failed",
        error_type=error.error_type,
        message=error.message,
        details=error.details,
        context=context,
    )

    print(error.get_user_message(), file=sys.stderr)

    if isinstance(error, ValidationFailure):
        print("\nProblems found:", file=sys.stderr)
        for item in error.errors:
            print(f"   - {item}", file=sys.stderr)

    print("", file=sys.stderr)
    return 1

"""Job failure taxonomy.

Handlers raise ``RetryableJobError`` or ``PermanentJobError`` to say how the
queue should treat a failure. Anything else that escapes a handler is run
through ``classify_error``, which looks at the exception type first and the
message text second.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from enum import Enum

import httpx


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class JobError(Exception):
    """Base class for failures raised by job handlers."""

    error_class: ErrorClass = ErrorClass.RETRYABLE


class RetryableJobError(JobError):
    """Transient failure. ``retry_after`` overrides the backoff for one retry."""

    error_class = ErrorClass.RETRYABLE

    def __init__(self, message: str, retry_after: timedelta | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentJobError(JobError):
    """Failure that no retry can fix (missing record, bad input, auth)."""

    error_class = ErrorClass.PERMANENT

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


RETRYABLE_PATTERNS: tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "econnrefused",
    "econnreset",
    "etimedout",
    "eai_again",
    "dns",
    "name resolution",
    "temporary",
    "rate limit",
    "too many requests",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "502",
    "503",
    "504",
    "no response",
    "empty response",
)

NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "not found",
    "unauthorized",
    "forbidden",
    "invalid",
    "malformed",
    "syntax error",
)

UNMATCHED_ERROR_CLASS = ErrorClass.RETRYABLE

_RETRYABLE_STATUS = {408, 425, 429}


def classify_message(message: str) -> ErrorClass:
    """Pattern-match an error message. Non-retryable wins; unknown is retryable."""
    text = message.lower()
    if any(pattern in text for pattern in NON_RETRYABLE_PATTERNS):
        return ErrorClass.PERMANENT
    if any(pattern in text for pattern in RETRYABLE_PATTERNS):
        return ErrorClass.RETRYABLE
    return UNMATCHED_ERROR_CLASS


def classify_status(status_code: int) -> ErrorClass:
    if status_code in _RETRYABLE_STATUS or status_code >= 500:
        return ErrorClass.RETRYABLE
    if 400 <= status_code < 500:
        return ErrorClass.PERMANENT
    return ErrorClass.RETRYABLE


def classify_error(exc: BaseException) -> ErrorClass:
    """Decide whether a handler failure deserves another attempt."""
    if isinstance(exc, JobError):
        return exc.error_class
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClass.RETRYABLE
    return classify_message(str(exc))


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorClass.RETRYABLE


def retry_after(exc: BaseException) -> timedelta | None:
    return getattr(exc, "retry_after", None)

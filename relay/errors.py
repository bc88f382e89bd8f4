"""Error taxonomy for the delivery pipeline.

Every failure that reaches the dispatcher is reduced to an ``ErrorClass``;
the retry policy only ever looks at that class, never at the exception type.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx


class ErrorClass(str, Enum):
    # retryable
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    LEASE_EXPIRED = "lease_expired"
    # non-retryable
    VALIDATION = "validation"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    MAPPING_NOT_FOUND = "mapping_not_found"
    CONFLICT = "conflict"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_CLASSES


RETRYABLE_CLASSES = frozenset({
    ErrorClass.TIMEOUT,
    ErrorClass.CONNECTION,
    ErrorClass.RATE_LIMITED,
    ErrorClass.SERVICE_UNAVAILABLE,
    ErrorClass.LEASE_EXPIRED,
})


class RelayError(Exception):
    """Base error; ``error_class`` decides how the retry policy treats it."""

    error_class: ErrorClass = ErrorClass.SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        error_class: ErrorClass | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_class is not None:
            self.error_class = error_class
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.error_class.retryable


class ValidationError(RelayError):
    """Malformed inbound event. Never queued, never retried."""

    error_class = ErrorClass.VALIDATION


class MappingNotFound(RelayError):
    """No ThreadBinding for the requested side.

    ``context`` is filled in by the retrying lookup so operators can tell a
    transient race (``likely_race_condition``) from an orphaned event.
    """

    error_class = ErrorClass.MAPPING_NOT_FOUND

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=context)
        self.context = self.details


class BindingConflict(RelayError):
    """A ticket or thread is already bound to a different counterpart."""

    error_class = ErrorClass.CONFLICT


class TransientPlatformError(RelayError):
    error_class = ErrorClass.SERVICE_UNAVAILABLE


class PermanentPlatformError(RelayError):
    error_class = ErrorClass.BAD_REQUEST


class HandlerTimeout(RelayError):
    error_class = ErrorClass.TIMEOUT


class LeaseExpired(RelayError):
    """Raised (or synthesized) when a worker's lease lapsed before ack/fail."""

    error_class = ErrorClass.LEASE_EXPIRED


_STATUS_CLASSES: dict[int, ErrorClass] = {
    400: ErrorClass.BAD_REQUEST,
    401: ErrorClass.AUTH,
    403: ErrorClass.AUTH,
    404: ErrorClass.NOT_FOUND,
    408: ErrorClass.TIMEOUT,
    409: ErrorClass.CONFLICT,
    422: ErrorClass.BAD_REQUEST,
    429: ErrorClass.RATE_LIMITED,
    502: ErrorClass.SERVICE_UNAVAILABLE,
    503: ErrorClass.SERVICE_UNAVAILABLE,
    504: ErrorClass.TIMEOUT,
}

_NON_RETRYABLE_KEYWORDS = (
    ("validation", ErrorClass.VALIDATION),
    ("authentication", ErrorClass.AUTH),
    ("authorization", ErrorClass.AUTH),
    ("not found", ErrorClass.NOT_FOUND),
    ("bad request", ErrorClass.BAD_REQUEST),
)

_RETRYABLE_KEYWORDS = (
    ("timeout", ErrorClass.TIMEOUT),
    ("timed out", ErrorClass.TIMEOUT),
    ("connection", ErrorClass.CONNECTION),
    ("rate limit", ErrorClass.RATE_LIMITED),
    ("service unavailable", ErrorClass.SERVICE_UNAVAILABLE),
)


def status_error_class(status_code: int) -> ErrorClass:
    if status_code in _STATUS_CLASSES:
        return _STATUS_CLASSES[status_code]
    if status_code >= 500:
        return ErrorClass.SERVICE_UNAVAILABLE
    return ErrorClass.BAD_REQUEST


def classify_error(exc: BaseException) -> ErrorClass:
    """Reduce any exception raised by a handler to an ``ErrorClass``."""
    if isinstance(exc, RelayError):
        return exc.error_class
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorClass.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return status_error_class(exc.response.status_code)
    if isinstance(exc, (httpx.ConnectError, httpx.RemoteProtocolError, httpx.ReadError, ConnectionError)):
        return ErrorClass.CONNECTION

    message = str(exc).lower()
    for keyword, error_class in _NON_RETRYABLE_KEYWORDS:
        if keyword in message:
            return error_class
    for keyword, error_class in _RETRYABLE_KEYWORDS:
        if keyword in message:
            return error_class
    # Unknown failures get the benefit of the doubt.
    return ErrorClass.SERVICE_UNAVAILABLE


def raise_for_platform_status(response: httpx.Response, platform: str) -> None:
    """Translate a non-2xx platform response into the relay error taxonomy."""
    if response.is_success:
        return
    error_class = status_error_class(response.status_code)
    body = response.text[:300]
    message = f"{platform} API error {response.status_code}: {body}"
    details = {"platform": platform, "status_code": response.status_code}
    retry_after = response.headers.get("retry-after")
    if retry_after:
        details["retry_after"] = retry_after
    if error_class.retryable:
        raise TransientPlatformError(message, error_class=error_class, details=details)
    raise PermanentPlatformError(message, error_class=error_class, details=details)

"""Retry policy: requeue-with-delay or dead-letter.

``decide`` is a pure function of (error class, attempt count, limits). The
queue manager applies the decision as delayed visibility on the queue row, so
no worker ever sleeps through another event's backoff window.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from relay.errors import ErrorClass, classify_error


class RetryAction(str, Enum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float
    error_class: ErrorClass
    attempt_count: int
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


def backoff_delay(attempt_count: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """``min(base * 2^(attempt-1), max)``; attempt counts start at 1."""
    exponent = max(attempt_count - 1, 0)
    # Cap the exponent so huge attempt counts cannot overflow the float.
    return min(base_delay * (2 ** min(exponent, 62)), max_delay)


def decide(
    error: ErrorClass | BaseException,
    attempt_count: int,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> RetryDecision:
    """Decide what happens to an event that just failed its ``attempt_count``-th try."""
    error_class = error if isinstance(error, ErrorClass) else classify_error(error)

    if not error_class.retryable:
        return RetryDecision(
            RetryAction.DEAD_LETTER, 0.0, error_class, attempt_count,
            reason=f"non-retryable error ({error_class.value})",
        )
    if attempt_count >= max_attempts:
        return RetryDecision(
            RetryAction.DEAD_LETTER, 0.0, error_class, attempt_count,
            reason=f"exhausted {max_attempts} attempts",
        )
    return RetryDecision(
        RetryAction.RETRY,
        backoff_delay(attempt_count, base_delay, max_delay),
        error_class,
        attempt_count,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Per-queue retry limits bound to ``decide``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def decide(self, error: ErrorClass | BaseException, attempt_count: int) -> RetryDecision:
        return decide(error, attempt_count, self.max_attempts, self.base_delay, self.max_delay)

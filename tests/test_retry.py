"""Tests for the retry policy and error classification."""

import asyncio

import httpx
import pytest

from relay.errors import (
    ErrorClass,
    MappingNotFound,
    PermanentPlatformError,
    TransientPlatformError,
    ValidationError,
    classify_error,
    raise_for_platform_status,
)
from relay.pipeline.retry import RetryAction, RetryPolicy, backoff_delay, decide


def test_backoff_doubles_until_capped():
    delays = [backoff_delay(n, 1.0, 30.0) for n in range(1, 9)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]


def test_backoff_is_monotonic_for_large_attempts():
    previous = 0.0
    for attempt in range(1, 200):
        delay = backoff_delay(attempt, 0.5, 30.0)
        assert delay >= previous
        assert delay <= 30.0
        previous = delay


def test_retryable_error_is_retried_with_delay():
    decision = decide(ErrorClass.TIMEOUT, attempt_count=1, max_attempts=3)
    assert decision.action is RetryAction.RETRY
    assert decision.delay == 1.0

    decision = decide(ErrorClass.RATE_LIMITED, attempt_count=2, max_attempts=3)
    assert decision.should_retry
    assert decision.delay == 2.0


def test_exhausted_attempts_go_to_dead_letter():
    decision = decide(ErrorClass.SERVICE_UNAVAILABLE, attempt_count=3, max_attempts=3)
    assert decision.action is RetryAction.DEAD_LETTER
    assert "exhausted" in decision.reason


def test_non_retryable_short_circuits_on_first_attempt():
    for error_class in (ErrorClass.VALIDATION, ErrorClass.AUTH, ErrorClass.NOT_FOUND, ErrorClass.BAD_REQUEST):
        decision = decide(error_class, attempt_count=1, max_attempts=10)
        assert decision.action is RetryAction.DEAD_LETTER


def test_decide_accepts_exceptions():
    assert decide(ValidationError("bad"), 1).action is RetryAction.DEAD_LETTER
    assert decide(MappingNotFound("missing"), 1).action is RetryAction.DEAD_LETTER
    assert decide(asyncio.TimeoutError(), 1).should_retry


def test_policy_uses_its_own_limits():
    policy = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=10.0)
    assert policy.decide(ErrorClass.CONNECTION, 3).delay == 8.0
    assert policy.decide(ErrorClass.CONNECTION, 4).delay == 10.0
    assert not policy.decide(ErrorClass.CONNECTION, 5).should_retry


def test_classify_http_status_errors():
    request = httpx.Request("POST", "https://example.test")

    def status_error(code: int) -> httpx.HTTPStatusError:
        return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(code, request=request))

    assert classify_error(status_error(429)) is ErrorClass.RATE_LIMITED
    assert classify_error(status_error(503)) is ErrorClass.SERVICE_UNAVAILABLE
    assert classify_error(status_error(500)) is ErrorClass.SERVICE_UNAVAILABLE
    assert classify_error(status_error(401)) is ErrorClass.AUTH
    assert classify_error(status_error(404)) is ErrorClass.NOT_FOUND
    assert classify_error(status_error(422)) is ErrorClass.BAD_REQUEST


def test_classify_transport_and_keyword_errors():
    assert classify_error(httpx.ConnectError("refused")) is ErrorClass.CONNECTION
    assert classify_error(httpx.ReadTimeout("slow")) is ErrorClass.TIMEOUT
    assert classify_error(ConnectionResetError()) is ErrorClass.CONNECTION
    assert classify_error(RuntimeError("Validation failed for field")) is ErrorClass.VALIDATION
    assert classify_error(RuntimeError("request timed out")) is ErrorClass.TIMEOUT
    assert classify_error(RuntimeError("something odd")) is ErrorClass.SERVICE_UNAVAILABLE


def test_raise_for_platform_status_splits_transient_and_permanent():
    request = httpx.Request("GET", "https://example.test")
    raise_for_platform_status(httpx.Response(200, request=request), "chat")

    with pytest.raises(TransientPlatformError) as transient:
        raise_for_platform_status(
            httpx.Response(429, headers={"retry-after": "3"}, text="slow down", request=request), "chat"
        )
    assert transient.value.error_class is ErrorClass.RATE_LIMITED
    assert transient.value.details["retry_after"] == "3"

    with pytest.raises(PermanentPlatformError) as permanent:
        raise_for_platform_status(httpx.Response(403, text="no", request=request), "ticketing")
    assert permanent.value.error_class is ErrorClass.AUTH
    assert not permanent.value.retryable

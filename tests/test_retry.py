from __future__ import annotations

import pytest

from app.data.errors import (
    RetryExhaustedError,
    TokenNotFoundError,
    UpstreamError,
    UpstreamErrorKind,
    UpstreamRejectedError,
)
from app.data.retry import RetryPolicy, call_with_retry


class _Flaky:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def test_delays_double_and_cap():
    policy = RetryPolicy(attempts=6, base_delay=1.0, max_delay=10.0)
    assert [policy.delay(i) for i in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


async def test_recovers_after_retryable_failures(sleeps):
    fn = _Flaky(
        UpstreamError(UpstreamErrorKind.RATE_LIMITED),
        UpstreamError(UpstreamErrorKind.SERVER_ERROR),
        "ok",
    )
    result = await call_with_retry(fn, policy=RetryPolicy(), label="test", sleep=sleeps)
    assert result == "ok"
    assert fn.calls == 3
    assert sleeps.waits == [1.0, 2.0]


async def test_exhaustion_raises_retry_exhausted(sleeps):
    fn = _Flaky(*[UpstreamError(UpstreamErrorKind.UNAVAILABLE, "down")] * 3)
    with pytest.raises(RetryExhaustedError) as info:
        await call_with_retry(fn, policy=RetryPolicy(), label="test", sleep=sleeps)
    assert fn.calls == 3
    assert info.value.attempts == 3
    assert sleeps.waits == [1.0, 2.0]


async def test_abort_short_circuits(sleeps):
    fn = _Flaky(UpstreamError(UpstreamErrorKind.BAD_REQUEST, "Token not found"), "never")
    with pytest.raises(TokenNotFoundError):
        await call_with_retry(fn, policy=RetryPolicy(), label="test", sleep=sleeps)
    assert fn.calls == 1
    assert sleeps.waits == []


async def test_unknown_kind_is_not_retried(sleeps):
    fn = _Flaky(UpstreamError(UpstreamErrorKind.UNAUTHORIZED, "bad key"), "never")
    with pytest.raises(UpstreamRejectedError):
        await call_with_retry(fn, policy=RetryPolicy(), label="test", sleep=sleeps)
    assert fn.calls == 1


async def test_foreign_exceptions_propagate(sleeps):
    fn = _Flaky(KeyError("price"), "never")
    with pytest.raises(KeyError):
        await call_with_retry(fn, policy=RetryPolicy(), label="test", sleep=sleeps)
    assert fn.calls == 1

"""Unit tests for the retry policy and the generic task runner"""

import pytest

from lease_billing.domain.exceptions import GatewayDeclinedError, GatewayUnavailableError
from lease_billing.domain.retry import RetryPolicy, run_with_retry

POLICY = RetryPolicy(max_attempts=4, backoff_base=1.0, retryable=(GatewayUnavailableError,))


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def flaky(failures: int, error: Exception):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error
        return "ok"

    return operation, calls


def test_backoff_is_exponential_and_capped():
    assert [POLICY.backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
    assert RetryPolicy(backoff_base=1.0, max_backoff=5.0).backoff(10) == 5.0


def test_should_retry():
    assert POLICY.should_retry(GatewayUnavailableError("down"), attempt=1)
    assert not POLICY.should_retry(GatewayUnavailableError("down"), attempt=4)
    assert not POLICY.should_retry(ValueError("bug"), attempt=1)


def test_error_can_veto_retry():
    """A declined charge is never retried even if its type is listed"""
    policy = RetryPolicy(max_attempts=4, retryable=(GatewayDeclinedError,))
    assert not policy.should_retry(GatewayDeclinedError("declined"), attempt=1)


async def test_run_with_retry_recovers():
    sleep = FakeSleep()
    operation, calls = flaky(2, GatewayUnavailableError("down"))

    assert await run_with_retry(operation, POLICY, sleep=sleep) == "ok"
    assert calls["count"] == 3
    assert sleep.delays == [1.0, 2.0]


async def test_run_with_retry_gives_up():
    sleep = FakeSleep()
    operation, calls = flaky(10, GatewayUnavailableError("down"))

    with pytest.raises(GatewayUnavailableError):
        await run_with_retry(operation, POLICY, sleep=sleep)
    assert calls["count"] == 4
    assert len(sleep.delays) == 3


async def test_run_with_retry_does_not_retry_other_errors():
    sleep = FakeSleep()
    operation, calls = flaky(1, GatewayDeclinedError("declined", code="card_declined"))

    with pytest.raises(GatewayDeclinedError):
        await run_with_retry(operation, POLICY, sleep=sleep)
    assert calls["count"] == 1
    assert sleep.delays == []

import asyncio

import pytest

from choptso.core.exceptions import (
    OperationTimeoutError,
    TransientError,
    ValidationError,
)
from choptso.core.retry import RetryPolicy


class Flaky:
    """Fails with ``error`` for the first ``failures`` calls."""

    def __init__(self, failures: int, error: Exception = None, result="ok"):
        self.failures = failures
        self.error = error or TransientError("store unavailable")
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        call = Flaky(failures=2)
        policy = RetryPolicy(max_attempts=3, backoff_base_seconds=0.001)

        assert await policy.run("send", call) == "ok"
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        call = Flaky(failures=10)
        policy = RetryPolicy(max_attempts=3, backoff_base_seconds=0.001)

        with pytest.raises(TransientError):
            await policy.run("send", call)
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_validation_errors_are_not_retried(self):
        call = Flaky(failures=1, error=ValidationError("bad"))
        policy = RetryPolicy(max_attempts=3, backoff_base_seconds=0.001)

        with pytest.raises(ValidationError):
            await policy.run("send", call)
        assert call.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_surfaces_distinctly_and_is_not_retried(self):
        calls = []

        async def hang():
            calls.append(1)
            await asyncio.sleep(10)

        policy = RetryPolicy(timeout_seconds=0.05, max_attempts=3)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await policy.run("send", hang)
        assert isinstance(exc_info.value, TimeoutError)
        assert len(calls) == 1

    def test_backoff_is_exponential(self):
        policy = RetryPolicy(backoff_base_seconds=0.5)
        assert [policy.backoff(a) for a in range(3)] == [0.5, 1.0, 2.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

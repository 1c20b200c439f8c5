"""Tests for retry strategies and RetryContext."""

from __future__ import annotations

import pytest

from dstat.core.errors import BackendAuthError, BackendUnavailable
from dstat.execution.retry import ConstantBackoff, ExponentialBackoff, NoRetry, RetryContext


# ── Strategies ───────────────────────────────────────────────────────────


class TestExponentialBackoff:
    def test_delays_grow_and_cap(self):
        strategy = ExponentialBackoff(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [strategy.next_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=2.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 1.5 <= strategy.next_delay(0) <= 2.5

    def test_retries_only_retryable_errors(self):
        strategy = ExponentialBackoff(max_retries=3)
        assert strategy.should_retry(1, BackendUnavailable("503")) is True
        assert strategy.should_retry(1, BackendAuthError("401")) is False
        assert strategy.should_retry(1, ValueError("bug")) is False

    def test_stops_after_max_retries(self):
        strategy = ExponentialBackoff(max_retries=2)
        assert strategy.should_retry(2, BackendUnavailable("x")) is True
        assert strategy.should_retry(3, BackendUnavailable("x")) is False


class TestOtherStrategies:
    def test_constant(self):
        strategy = ConstantBackoff(max_retries=1, delay=0.5)
        assert strategy.next_delay(7) == 0.5
        assert strategy.should_retry(1, BackendUnavailable("x")) is True
        assert strategy.should_retry(2, BackendUnavailable("x")) is False

    def test_no_retry(self):
        assert NoRetry().should_retry(0, BackendUnavailable("x")) is False


# ── RetryContext ─────────────────────────────────────────────────────────


def _flaky(failures: int, error: Exception):
    calls = {"n": 0}

    async def func(value):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error
        return value

    return func, calls


class TestRetryContext:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func, calls = _flaky(2, BackendUnavailable("503"))
        retried = []
        ctx = RetryContext(
            ExponentialBackoff(max_retries=3, base_delay=0, jitter=False),
            on_retry=lambda attempt, error, delay: retried.append(attempt),
        )
        assert await ctx.run_async(func, "ok") == "ok"
        assert calls["n"] == 3
        assert ctx.attempts == 3
        assert retried == [1, 2]
        assert len(ctx.errors) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        func, calls = _flaky(10, BackendUnavailable("503"))
        ctx = RetryContext(ExponentialBackoff(max_retries=2, base_delay=0, jitter=False))
        with pytest.raises(BackendUnavailable):
            await ctx.run_async(func, "ok")
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_auth_errors_are_not_retried(self):
        func, calls = _flaky(1, BackendAuthError("401"))
        ctx = RetryContext(ExponentialBackoff(max_retries=5, base_delay=0))
        with pytest.raises(BackendAuthError):
            await ctx.run_async(func, "ok")
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_retry_after_raises_delay(self, monkeypatch):
        slept = []

        async def fake_sleep(delay):
            slept.append(delay)

        monkeypatch.setattr("dstat.execution.retry.asyncio.sleep", fake_sleep)
        func, _ = _flaky(1, BackendUnavailable("429", retry_after=7.0))
        ctx = RetryContext(ExponentialBackoff(max_retries=1, base_delay=0.1, jitter=False))
        await ctx.run_async(func, "ok")
        assert slept == [7.0]

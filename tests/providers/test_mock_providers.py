"""Tests for the failure-injecting mock providers."""

from __future__ import annotations

import asyncio

import pytest

from dstat.core.errors import BackendRejected, BackendUnavailable
from dstat.execution.retry import ExponentialBackoff, NoRetry
from dstat.providers._types import JobFilter
from dstat.providers.mock_providers import (
    FailingProvider,
    FlakeyProvider,
    SequenceProvider,
    SlowProvider,
)
from tests._support import make_job


class TestFailingProvider:
    @pytest.mark.asyncio
    async def test_raises_configured_error(self):
        provider = FailingProvider(error=BackendRejected, message="bad filter")
        with pytest.raises(BackendRejected, match="bad filter"):
            await provider.list_jobs(JobFilter())
        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_reports_unhealthy(self):
        health = await FailingProvider().health()
        assert health.healthy is False
        assert health.provider == "failing"


class TestSlowProvider:
    @pytest.mark.asyncio
    async def test_returns_after_delay(self):
        provider = SlowProvider([make_job("job-a")], delay=0.01)
        records = await provider.list_jobs(JobFilter())
        assert [r.job_id for r in records] == ["job-a"]
        assert provider.started == 1

    @pytest.mark.asyncio
    async def test_counts_cancellation(self):
        provider = SlowProvider(delay=10)
        task = asyncio.create_task(provider.list_jobs(JobFilter()))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert provider.cancelled == 1


class TestFlakeyProvider:
    @pytest.mark.asyncio
    async def test_fail_first_then_recover_through_retry(self):
        provider = FlakeyProvider(
            [make_job("job-a")],
            fail_first=2,
            retry=ExponentialBackoff(max_retries=3, base_delay=0),
        )
        records = await provider.list_jobs(JobFilter())
        assert len(records) == 1
        assert provider.call_count == 3
        assert provider.failure_count == 2
        assert provider.success_count == 1

    @pytest.mark.asyncio
    async def test_without_retry_surfaces_failure(self):
        provider = FlakeyProvider(fail_first=1, retry=NoRetry())
        with pytest.raises(BackendUnavailable):
            await provider.list_jobs(JobFilter())

    @pytest.mark.asyncio
    async def test_seeded_runs_are_reproducible(self):
        async def outcomes(seed):
            provider = FlakeyProvider(success_rate=0.5, seed=seed, retry=NoRetry())
            results = []
            for _ in range(10):
                try:
                    await provider.list_jobs(JobFilter())
                    results.append(True)
                except BackendUnavailable:
                    results.append(False)
            return results

        assert await outcomes(7) == await outcomes(7)

    def test_rejects_bad_success_rate(self):
        with pytest.raises(ValueError):
            FlakeyProvider(success_rate=1.5)


class TestSequenceProvider:
    @pytest.mark.asyncio
    async def test_steps_through_snapshots_and_repeats_last(self):
        running = make_job("job-a", status="RUNNING")
        done = make_job("job-a", status="SUCCESS")
        provider = SequenceProvider([[running], [done]])
        seen = [(await provider.list_jobs(JobFilter()))[0].status.value for _ in range(3)]
        assert seen == ["RUNNING", "SUCCESS", "SUCCESS"]

    def test_needs_a_snapshot(self):
        with pytest.raises(ValueError):
            SequenceProvider([])

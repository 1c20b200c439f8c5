"""Tests for BaseProviderAdapter behavior, exercised through StubProvider."""

from __future__ import annotations

import pytest

from dstat.core.errors import BackendAuthError, BackendUnavailable
from dstat.execution.retry import ExponentialBackoff
from dstat.providers._base import BaseProviderAdapter, StubProvider
from dstat.providers._types import JobFilter, JobRecord, ProviderAdapter
from tests._support import make_job


class CrashingProvider(BaseProviderAdapter):
    """Raises a plain exception, as a buggy backend client would."""

    def __init__(self):
        super().__init__(retry=ExponentialBackoff(max_retries=3, base_delay=0))
        self.calls = 0
        self.closed_count = 0

    @property
    def provider_name(self) -> str:
        return "crashing"

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        self.calls += 1
        raise KeyError("metadata")

    async def _do_health(self):
        raise RuntimeError("socket closed")

    async def _do_aclose(self) -> None:
        self.closed_count += 1


# ── Protocol ─────────────────────────────────────────────────────────────


class TestProtocol:
    def test_stub_satisfies_protocol(self):
        assert isinstance(StubProvider(), ProviderAdapter)

    def test_repr(self):
        assert repr(StubProvider(name="local")) == "StubProvider(provider='local')"


# ── list_jobs / describe ─────────────────────────────────────────────────


class TestListJobs:
    @pytest.mark.asyncio
    async def test_returns_records(self):
        provider = StubProvider([make_job("job-a"), make_job("job-b")])
        records = await provider.list_jobs(JobFilter())
        assert [r.job_id for r in records] == ["job-a", "job-b"]
        assert provider.list_count == 1

    @pytest.mark.asyncio
    async def test_job_id_pushdown(self):
        provider = StubProvider([make_job("job-a"), make_job("job-b")])
        records = await provider.list_jobs(JobFilter.for_job_ids(["job-b"]))
        assert [r.job_id for r in records] == ["job-b"]

    @pytest.mark.asyncio
    async def test_unavailable_gets_provider_context(self):
        provider = StubProvider(name="local")
        provider.fail_list = True
        with pytest.raises(BackendUnavailable) as exc_info:
            await provider.list_jobs(JobFilter())
        assert exc_info.value.context.provider == "local"
        assert exc_info.value.context.operation == "list"
        assert str(exc_info.value).startswith("[local]")

    @pytest.mark.asyncio
    async def test_auth_error_propagates_unwrapped(self):
        provider = StubProvider()
        provider.fail_auth = True
        with pytest.raises(BackendAuthError):
            await provider.list_jobs(JobFilter())

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self):
        provider = CrashingProvider()
        with pytest.raises(BackendUnavailable) as exc_info:
            await provider.list_jobs(JobFilter())
        error = exc_info.value
        assert error.retryable is False
        assert isinstance(error.cause, KeyError)
        assert provider.calls == 1


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        provider = StubProvider(retry=ExponentialBackoff(max_retries=2, base_delay=0))
        provider.fail_list = True
        with pytest.raises(BackendUnavailable):
            await provider.list_jobs(JobFilter())
        assert provider.list_count == 3

    @pytest.mark.asyncio
    async def test_stub_does_not_retry_by_default(self):
        provider = StubProvider()
        provider.fail_list = True
        with pytest.raises(BackendUnavailable):
            await provider.list_jobs(JobFilter())
        assert provider.list_count == 1

    @pytest.mark.asyncio
    async def test_auth_errors_are_not_retried(self):
        provider = StubProvider(retry=ExponentialBackoff(max_retries=5, base_delay=0))
        provider.fail_auth = True
        with pytest.raises(BackendAuthError):
            await provider.list_jobs(JobFilter())
        assert provider.list_count == 1


class TestDescribe:
    @pytest.mark.asyncio
    async def test_describe_known_ids(self):
        provider = StubProvider([make_job("job-a"), make_job("job-b")])
        records = await provider.describe(["job-b", "missing", "job-b"])
        assert [r.job_id for r in records] == ["job-b"]
        assert provider.describe_count == 1

    @pytest.mark.asyncio
    async def test_describe_nothing(self):
        provider = StubProvider([make_job("job-a")])
        assert await provider.describe([]) == []
        assert provider.describe_count == 0


# ── health / aclose ──────────────────────────────────────────────────────


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self):
        health = await StubProvider(name="local").health()
        assert health.healthy is True
        assert health.provider == "local"
        assert health.latency_ms is not None

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        provider = StubProvider()
        provider.fail_health = True
        health = await provider.health()
        assert health.healthy is False
        assert health.message == "Stub unhealthy"

    @pytest.mark.asyncio
    async def test_exception_reports_unhealthy(self):
        health = await CrashingProvider().health()
        assert health.healthy is False
        assert "socket closed" in health.message


class TestClose:
    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self):
        provider = CrashingProvider()
        await provider.aclose()
        await provider.aclose()
        assert provider.closed is True
        assert provider.closed_count == 1

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with CrashingProvider() as provider:
            assert provider.closed is False
        assert provider.closed is True

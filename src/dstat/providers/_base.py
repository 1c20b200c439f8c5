"""Base provider adapter with shared query logic.

Provides ``BaseProviderAdapter`` with common patterns (logging, bounded
retry, error wrapping, health timing) and ``StubProvider`` for unit tests.

Architecture:

    .. code-block:: text

        ProviderAdapter (Protocol)
              │
              ▼
        BaseProviderAdapter (Base)
        ├── list_jobs() → logging + retry + error wrapping → _do_list_jobs()
        ├── describe()  → dedupe ids + retry               → _do_describe()
        ├── health()    → latency timing                   → _do_health()
        └── aclose()    → idempotent                       → _do_aclose()
              │
        ┌─────┼──────────────────┬─────────────────────┐
        │     │                  │                     │
        ▼     ▼                  ▼                     ▼
    LocalProvider  GoogleV1Provider  GoogleV2Provider  StubProvider
    (job tree)     (v1 operations)   (v2 operations)   (in-memory)

    .. mermaid::

        classDiagram
            class BaseProviderAdapter {
                +list_jobs(criteria) list~JobRecord~
                +describe(job_ids) list~JobRecord~
                +health() ProviderHealth
                +aclose() None
                #_do_list_jobs(criteria)* list~JobRecord~
                #_do_describe(job_ids) list~JobRecord~
                #_do_health() ProviderHealth
                #_do_aclose() None
            }
            class StubProvider {
                +provider_name = "stub"
                +records: list
                +fail_list: bool
            }
            BaseProviderAdapter <|-- StubProvider

Usage:
    # In tests:
    provider = StubProvider(records=[make_job("job-a")])
    records = await provider.list_jobs(JobFilter())

    # Subclassing for real backends:
    class LocalProvider(BaseProviderAdapter):
        provider_name = "local"
        ...

See Also:
    _types.py: Protocol and type definitions
    mock_providers.py: Failing, slow and flakey providers

Tags:
    dstat, providers, base, adapter, retry

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from dstat.core.errors import (
    BackendAuthError,
    BackendUnavailable,
    DstatError,
    ErrorContext,
)
from dstat.core.logging import get_logger
from dstat.execution.retry import ExponentialBackoff, RetryContext, RetryStrategy
from dstat.providers._types import (
    JobFilter,
    JobRecord,
    ProviderCapabilities,
    ProviderHealth,
)

logger = get_logger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class BaseProviderAdapter:
    """Base class for provider adapters with shared query logic.

    Subclasses MUST implement:
        provider_name, _do_list_jobs

    Subclasses MAY override:
        capabilities (default = nothing pushed down)
        _do_describe (default = list_jobs on an id-only filter)
        _do_health (default = healthy)
        _do_aclose (default = nothing to release)

    The base class wraps each backend call with:
        - Structured logging (start, retry, done, failure)
        - Bounded exponential backoff for retryable errors
        - Conversion of unexpected exceptions to ``BackendUnavailable``

    .. code-block:: text

        list_jobs(criteria)
          ├── log: provider_list_started
          ├── RetryContext.run_async(_do_list_jobs)  ← subclass implements
          │     └── BackendUnavailable → backoff, retry (max_retries)
          │     └── BackendAuthError / BackendRejected → raise at once
          ├── log: provider_list_done (records, attempts, elapsed_ms)
          └── on unexpected error: wrap in BackendUnavailable
    """

    def __init__(self, *, retry: RetryStrategy | None = None) -> None:
        self.retry = retry or ExponentialBackoff()
        self.closed = False

    @property
    def provider_name(self) -> str:
        """Unique name for this provider."""
        raise NotImplementedError

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Criteria applied natively. Override in subclass."""
        return ProviderCapabilities()

    async def list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        """Query jobs with logging, retry and error wrapping."""
        logger.debug(
            "provider_list_started",
            provider=self.provider_name,
            criteria=criteria.to_dict(),
        )
        return await self._call("list", self._do_list_jobs, criteria)

    async def describe(self, job_ids: Iterable[str]) -> list[JobRecord]:
        """Fetch records for known job ids. Unknown ids are skipped."""
        ids = list(dict.fromkeys(job_ids))
        if not ids:
            return []
        return await self._call("describe", self._do_describe, ids)

    async def health(self) -> ProviderHealth:
        """Health check with latency timing."""
        start = time.perf_counter()
        try:
            result = await self._do_health()
            elapsed = (time.perf_counter() - start) * 1000
            return ProviderHealth(
                healthy=result.healthy,
                provider=self.provider_name,
                message=result.message,
                latency_ms=elapsed,
            )
        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            return ProviderHealth(
                healthy=False,
                provider=self.provider_name,
                message=f"Health check failed: {exc}",
                latency_ms=elapsed,
            )

    async def aclose(self) -> None:
        """Release backend resources. Idempotent."""
        if self.closed:
            return
        self.closed = True
        await self._do_aclose()
        logger.debug("provider_closed", provider=self.provider_name)

    async def __aenter__(self) -> BaseProviderAdapter:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider={self.provider_name!r})"

    async def _call(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        start = time.perf_counter()
        ctx = RetryContext(self.retry, on_retry=self._on_retry(operation))
        try:
            result = await ctx.run_async(func, *args)
        except DstatError as exc:
            exc.with_context(provider=self.provider_name, operation=operation)
            log = logger.error if isinstance(exc, BackendAuthError) else logger.warning
            log(
                "provider_call_failed",
                attempts=ctx.attempts,
                **exc.to_dict(),
            )
            raise
        except Exception as exc:
            logger.error(
                "provider_call_crashed",
                provider=self.provider_name,
                operation=operation,
                error=repr(exc),
            )
            raise BackendUnavailable(
                f"{operation} failed: {exc}",
                retryable=False,
                context=ErrorContext(provider=self.provider_name, operation=operation),
                cause=exc,
            ) from exc

        logger.debug(
            "provider_call_done",
            provider=self.provider_name,
            operation=operation,
            records=len(result) if isinstance(result, list) else None,
            attempts=ctx.attempts,
            elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result

    def _on_retry(self, operation: str) -> Callable[[int, BaseException, float], None]:
        def log_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.info(
                "provider_call_retry",
                provider=self.provider_name,
                operation=operation,
                attempt=attempt,
                delay_seconds=round(delay, 3),
                error=str(error),
            )

        return log_retry

    # --- Methods for subclasses ---

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        """Implement in subclass."""
        raise NotImplementedError

    async def _do_describe(self, job_ids: list[str]) -> list[JobRecord]:
        """Override when the backend can fetch ids directly."""
        return await self._do_list_jobs(JobFilter.for_job_ids(job_ids))

    async def _do_health(self) -> ProviderHealth:
        return ProviderHealth(healthy=True, provider=self.provider_name)

    async def _do_aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Stub provider for testing
# ---------------------------------------------------------------------------

class StubProvider(BaseProviderAdapter):
    """In-memory provider for unit tests.

    Returns its records for every query; the Filter Engine does the
    narrowing, as it does for any backend without pushdown.

    .. code-block:: text

        StubProvider behavior:

        list_jobs(criteria) → every stored record
        describe(ids)       → stored records whose job_id is in ids

        Inject failures:
          provider.fail_list = True   → list_jobs() raises BackendUnavailable
          provider.fail_auth = True   → list_jobs() raises BackendAuthError
          provider.fail_health = True → health() reports unhealthy
          provider.list_delay = 2.0   → list_jobs() sleeps first

        Track usage:
          provider.list_count    → backend calls (including retries)
          provider.describe_count

    Example:
        >>> provider = StubProvider(records=[job_a, job_b])
        >>> records = await provider.list_jobs(JobFilter())
        >>> len(records)
        2
    """

    def __init__(
        self,
        records: Iterable[JobRecord] = (),
        *,
        name: str = "stub",
        list_delay: float = 0.0,
        retry: RetryStrategy | None = None,
    ) -> None:
        super().__init__(retry=retry or ExponentialBackoff(max_retries=0))
        self._name = name
        self.records: list[JobRecord] = list(records)
        self.list_delay = list_delay

        self.list_count: int = 0
        self.describe_count: int = 0

        # Inject failures
        self.fail_list: bool = False
        self.fail_auth: bool = False
        self.fail_health: bool = False

    @property
    def provider_name(self) -> str:
        return self._name

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(filter_job_ids=True)

    def add(self, *records: JobRecord) -> None:
        """Store more records (e.g. a job that appears between polls)."""
        self.records.extend(records)

    def replace(self, record: JobRecord) -> None:
        """Swap a stored record for a newer snapshot of the same job."""
        self.records = [r for r in self.records if r.job_id != record.job_id]
        self.records.append(record)

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        self.list_count += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.fail_auth:
            raise BackendAuthError("Stub: credentials rejected")
        if self.fail_list:
            raise BackendUnavailable("Stub: list failure injected")
        if criteria.job_ids is not None:
            return [r for r in self.records if r.job_id in criteria.job_ids]
        return list(self.records)

    async def _do_describe(self, job_ids: list[str]) -> list[JobRecord]:
        self.describe_count += 1
        wanted = set(job_ids)
        return [r for r in self.records if r.job_id in wanted]

    async def _do_health(self) -> ProviderHealth:
        if self.fail_health:
            return ProviderHealth(healthy=False, provider=self.provider_name, message="Stub unhealthy")
        return ProviderHealth(healthy=True, provider=self.provider_name)


__all__ = ["BaseProviderAdapter", "StubProvider"]

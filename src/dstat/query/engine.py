"""Status Engine: concurrent fan-out over providers.

The ``StatusEngine`` is the single entry-point for answering a status
query. It asks every selected provider concurrently, isolates per-provider
failures, and runs the pure merge → filter → sort pipeline over the
snapshot that came back.

Architecture:

    .. code-block:: text

        StatusEngine: Query Facade
        ┌─────────────────────────────────────────────────────────────┐
        │                                                             │
        │  query(criteria)                                            │
        │    ├── bind query_id (LogContext)                           │
        │    ├── router.select(providers)                             │
        │    ├── one task per provider                                │
        │    │     └── asyncio.timeout(query_timeout)                 │
        │    │           └── provider.list_jobs(criteria)             │
        │    ├── gather ProviderOutcome per task                      │
        │    │     ├── BackendUnavailable / timeout → ProviderFailure │
        │    │     └── BackendAuthError / BackendRejected → raise,    │
        │    │         cancel the other tasks                         │
        │    ├── merge_records  (Aggregator)                          │
        │    ├── apply_filter   (Filter Engine)                       │
        │    ├── sort_records   (Sorter, limit)                       │
        │    └── return QueryResult                                   │
        │                                                             │
        │  wait(criteria)                                             │
        │    └── query() every poll_interval until all jobs terminal  │
        │                                                             │
        └─────────────────────────────────────────────────────────────┘

    .. mermaid::

        sequenceDiagram
            participant C as Caller
            participant E as StatusEngine
            participant L as LocalProvider
            participant G as GoogleV2Provider

            C->>E: query(criteria)
            par fan-out
                E->>L: list_jobs(criteria)
                E->>G: list_jobs(criteria)
            end
            L-->>E: [JobRecord]
            G-->>E: BackendUnavailable (after retries)
            E-->>C: QueryResult(records, failures=[google-v2], ok=False)

Example:
    >>> async with StatusEngine.from_settings(DstatSettings()) as engine:
    ...     result = await engine.query(JobFilter.build(statuses=["RUNNING"]))
    >>> [r.job_name for r in result.records]

Manifesto:
    A failed backend is never hidden behind an empty successful result.
    Records from the providers that answered are returned together with a
    failure entry for every provider that did not.

Tags:
    dstat, query, engine, concurrency, fan-out, partial-failure

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from dstat.core.errors import BackendUnavailable, DstatError, ErrorContext
from dstat.core.logging import LogContext, get_logger
from dstat.core.settings import DstatSettings
from dstat.providers._types import JobFilter, JobRecord, ProviderAdapter
from dstat.providers.router import ProviderRouter
from dstat.providers.transport import Token
from dstat.query.aggregate import merge_records, sort_records
from dstat.query.filters import apply_filter

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result envelopes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderFailure:
    """A provider that could not answer a query."""

    provider: str
    error: DstatError

    @property
    def message(self) -> str:
        return self.error.message

    def to_dict(self) -> dict[str, Any]:
        return {"provider": self.provider, **self.error.to_dict()}


@dataclass(frozen=True)
class ProviderOutcome:
    """What one provider task produced."""

    provider: str
    records: tuple[JobRecord, ...] = ()
    failure: ProviderFailure | None = None
    elapsed_ms: float = 0.0


@dataclass(frozen=True)
class QueryResult:
    """Result returned by ``StatusEngine.query()``.

    Attributes:
        records: Matching jobs, newest first.
        failures: One entry per provider that did not answer.
        providers: Providers queried, in selection order.
        query_id: Correlation id bound into every log line of the query.
        elapsed_ms: Wall time of the whole query.
    """

    records: list[JobRecord] = field(default_factory=list)
    failures: list[ProviderFailure] = field(default_factory=list)
    providers: list[str] = field(default_factory=list)
    query_id: str = ""
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        """True when every queried provider answered."""
        return not self.failures

    @property
    def all_terminal(self) -> bool:
        return all(record.status.is_terminal for record in self.records)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_id": self.query_id,
            "ok": self.ok,
            "providers": list(self.providers),
            "records": len(self.records),
            "failures": [f.to_dict() for f in self.failures],
            "elapsed_ms": self.elapsed_ms,
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class StatusEngine:
    """Answers status queries across one or more providers.

    Args:
        router: Registry holding the providers.
        providers: Names to query; None queries the router's default.
        query_timeout: Bound in seconds on each provider call, retries
            included. A provider that exceeds it counts as failed.
        all_or_nothing: Raise on the first failed provider instead of
            returning partial results.

    Example:
        >>> router = ProviderRouter()
        >>> router.register(StubProvider([job_a], name="local"))
        >>> engine = StatusEngine(router, query_timeout=5.0)
        >>> result = await engine.query(JobFilter())
        >>> result.ok
        True
    """

    def __init__(
        self,
        router: ProviderRouter,
        *,
        providers: Iterable[str] | None = None,
        query_timeout: float = 60.0,
        all_or_nothing: bool = False,
    ) -> None:
        self.router = router
        self.providers = list(providers) if providers is not None else None
        self.query_timeout = query_timeout
        self.all_or_nothing = all_or_nothing

    @classmethod
    def from_settings(
        cls,
        settings: DstatSettings,
        *,
        providers: Iterable[str] | None = None,
        token: Token = None,
    ) -> StatusEngine:
        """Build providers from settings and wrap them in an engine."""
        names = list(providers) if providers else settings.provider_names()
        router = ProviderRouter.from_settings(settings, names=names, token=token)
        return cls(
            router,
            providers=names,
            query_timeout=settings.query_timeout_seconds,
            all_or_nothing=settings.all_or_nothing,
        )

    async def __aenter__(self) -> StatusEngine:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.router.aclose()

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query(self, criteria: JobFilter, *, limit: int | None = None) -> QueryResult:
        """Run one query against every selected provider.

        Raises:
            UnknownProvider: A selected provider is not registered.
            BackendAuthError: A provider rejected the credentials.
            BackendRejected: A provider refused the request.
            BackendUnavailable: Only with ``all_or_nothing``.
        """
        providers = self.router.select(self.providers)
        query_id = uuid.uuid4().hex[:12]
        start = time.perf_counter()

        async with LogContext(query_id=query_id):
            logger.info(
                "query_started",
                providers=[p.provider_name for p in providers],
                criteria=criteria.to_dict(),
            )
            outcomes = await self._fan_out(providers, criteria)

            records = [r for outcome in outcomes for r in outcome.records]
            merged = merge_records(records)
            matched = apply_filter(merged, criteria)
            ordered = sort_records(matched, limit)

            result = QueryResult(
                records=ordered,
                failures=[o.failure for o in outcomes if o.failure is not None],
                providers=[o.provider for o in outcomes],
                query_id=query_id,
                elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            logger.info(
                "query_done",
                fetched=len(records),
                matched=len(ordered),
                failed=[f.provider for f in result.failures],
                elapsed_ms=result.elapsed_ms,
            )
        return result

    async def _fan_out(
        self,
        providers: list[ProviderAdapter],
        criteria: JobFilter,
    ) -> list[ProviderOutcome]:
        tasks = [
            asyncio.create_task(self._query_provider(p, criteria), name=f"dstat-{p.provider_name}")
            for p in providers
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            # Caller cancellation or a fatal provider error: unwind the rest.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _query_provider(self, provider: ProviderAdapter, criteria: JobFilter) -> ProviderOutcome:
        name = provider.provider_name
        start = time.perf_counter()
        try:
            async with asyncio.timeout(self.query_timeout):
                records = await provider.list_jobs(criteria)
        except TimeoutError as exc:
            error = BackendUnavailable(
                f"No answer within {self.query_timeout:g}s",
                context=ErrorContext(provider=name, operation="list"),
                cause=exc,
            )
            return self._failed(name, error, start)
        except BackendUnavailable as exc:
            return self._failed(name, exc, start)

        elapsed = round((time.perf_counter() - start) * 1000, 2)
        logger.debug("provider_answered", provider=name, records=len(records), elapsed_ms=elapsed)
        return ProviderOutcome(provider=name, records=tuple(records), elapsed_ms=elapsed)

    def _failed(self, name: str, error: BackendUnavailable, start: float) -> ProviderOutcome:
        error.with_context(provider=name)
        if self.all_or_nothing:
            raise error
        logger.warning("provider_failed", **error.to_dict())
        return ProviderOutcome(
            provider=name,
            failure=ProviderFailure(provider=name, error=error),
            elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    # ------------------------------------------------------------------
    # Wait
    # ------------------------------------------------------------------

    async def wait(
        self,
        criteria: JobFilter,
        *,
        poll_interval: float = 10.0,
        timeout: float | None = None,
        limit: int | None = None,
        on_poll: Callable[[QueryResult], None] | None = None,
    ) -> QueryResult:
        """Re-query until every matching job is terminal.

        Returns early with the failing result when a provider fails, and
        with the last result when ``timeout`` runs out (check
        ``all_terminal``).
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            result = await self.query(criteria, limit=limit)
            if on_poll is not None:
                on_poll(result)
            if not result.ok or result.all_terminal:
                return result

            pending = sum(1 for r in result.records if not r.status.is_terminal)
            delay = poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning("wait_timed_out", pending=pending, timeout=timeout)
                    return result
                delay = min(delay, remaining)
            logger.info("wait_polling", pending=pending, next_poll_seconds=delay)
            await asyncio.sleep(delay)


__all__ = [
    "ProviderFailure",
    "ProviderOutcome",
    "QueryResult",
    "StatusEngine",
]

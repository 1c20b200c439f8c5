"""Mock Providers: test doubles for edge-case simulation.

Provides purpose-built providers that extend ``BaseProviderAdapter`` for
testing timeout handling, flaky backends, error propagation, and jobs that
progress between polls without any real backend.

Architecture::

    BaseProviderAdapter
    ├── StubProvider        (existing: fixed in-memory records)
    ├── FailingProvider     (always raises a specific DstatError)
    ├── SlowProvider        (configurable latency injection)
    ├── FlakeyProvider      (fails the first N calls, or at random)
    └── SequenceProvider    (scripted snapshots, one per call)

    Usage with StatusEngine:

        router = ProviderRouter()
        router.register(StubProvider(records, name="local"))
        router.register(SlowProvider(delay=5.0, name="google-v2"))

        engine = StatusEngine(router, query_timeout=1.0)
        result = await engine.query(JobFilter())
        assert not result.ok   # google-v2 timed out, local still answered

Example::

    from dstat.providers.mock_providers import FailingProvider, FlakeyProvider

    # Always reject credentials
    provider = FailingProvider(error=BackendAuthError)

    # Two transient failures, then success
    provider = FlakeyProvider(records, fail_first=2)

See Also:
    dstat.providers._base: BaseProviderAdapter and StubProvider
    dstat.query.engine: StatusEngine
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Iterable, Sequence

from dstat.core.errors import BackendUnavailable, DstatError
from dstat.execution.retry import NoRetry, RetryStrategy
from dstat.providers._base import BaseProviderAdapter
from dstat.providers._types import JobFilter, JobRecord, ProviderHealth


# ---------------------------------------------------------------------------
# FailingProvider: always raises a specific DstatError
# ---------------------------------------------------------------------------

class FailingProvider(BaseProviderAdapter):
    """Provider whose every query fails with the configured error class.

    Parameters
    ----------
    error
        ``DstatError`` subclass to raise (default: ``BackendUnavailable``).
    message
        Custom error message.
    name
        Provider name to register under.

    Example::

        provider = FailingProvider(error=BackendRejected)
        # Every list_jobs() call raises BackendRejected
    """

    def __init__(
        self,
        *,
        error: type[DstatError] = BackendUnavailable,
        message: str = "Simulated failure",
        name: str = "failing",
        retry: RetryStrategy | None = None,
    ) -> None:
        super().__init__(retry=retry or NoRetry())
        self._error = error
        self._message = message
        self._name = name
        self.call_count: int = 0

    @property
    def provider_name(self) -> str:
        return self._name

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        self.call_count += 1
        raise self._error(self._message)

    async def _do_health(self) -> ProviderHealth:
        return ProviderHealth(healthy=False, provider=self.provider_name, message=self._message)


# ---------------------------------------------------------------------------
# SlowProvider: configurable latency injection
# ---------------------------------------------------------------------------

class SlowProvider(BaseProviderAdapter):
    """Provider that sleeps before answering.

    Useful for testing query timeouts and caller cancellation.

    Parameters
    ----------
    records
        Records returned once the delay has passed.
    delay
        Seconds to wait inside every ``list_jobs()`` call.

    Example::

        provider = SlowProvider(delay=5.0)
        # list_jobs() takes 5 seconds before returning
    """

    def __init__(
        self,
        records: Iterable[JobRecord] = (),
        *,
        delay: float = 1.0,
        name: str = "slow",
    ) -> None:
        super().__init__(retry=NoRetry())
        self._records = list(records)
        self._delay = delay
        self._name = name
        self.started: int = 0
        self.cancelled: int = 0

    @property
    def provider_name(self) -> str:
        return self._name

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        self.started += 1
        try:
            await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return list(self._records)


# ---------------------------------------------------------------------------
# FlakeyProvider: transient failures
# ---------------------------------------------------------------------------

class FlakeyProvider(BaseProviderAdapter):
    """Provider that raises ``BackendUnavailable`` some of the time.

    Parameters
    ----------
    records
        Records returned on success.
    fail_first
        Fail this many calls before succeeding (deterministic mode).
    success_rate
        Probability of success when ``fail_first`` is None.
    seed
        Optional random seed for reproducible test runs.

    Example::

        provider = FlakeyProvider(records, fail_first=2)
        # calls 1 and 2 raise, call 3 returns records
    """

    def __init__(
        self,
        records: Iterable[JobRecord] = (),
        *,
        fail_first: int | None = None,
        success_rate: float = 0.5,
        seed: int | None = None,
        name: str = "flakey",
        retry: RetryStrategy | None = None,
    ) -> None:
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError(f"success_rate must be 0.0-1.0, got {success_rate}")
        super().__init__(retry=retry)
        self._records = list(records)
        self._fail_first = fail_first
        self._success_rate = success_rate
        self._rng = random.Random(seed)
        self._name = name
        self.call_count: int = 0
        self.success_count: int = 0
        self.failure_count: int = 0

    @property
    def provider_name(self) -> str:
        return self._name

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        self.call_count += 1
        if self._fail_first is not None:
            failed = self.call_count <= self._fail_first
        else:
            failed = self._rng.random() >= self._success_rate
        if failed:
            self.failure_count += 1
            raise BackendUnavailable(f"Flakey failure on call {self.call_count}")
        self.success_count += 1
        return list(self._records)


# ---------------------------------------------------------------------------
# SequenceProvider: scripted snapshots
# ---------------------------------------------------------------------------

class SequenceProvider(BaseProviderAdapter):
    """Provider that returns the next scripted snapshot on every call.

    The last snapshot repeats once the script is exhausted.

    Example::

        provider = SequenceProvider([[running_job], [finished_job]])
        # first poll sees RUNNING, every later poll sees SUCCESS
    """

    def __init__(
        self,
        snapshots: Sequence[Sequence[JobRecord]],
        *,
        name: str = "sequence",
    ) -> None:
        if not snapshots:
            raise ValueError("SequenceProvider needs at least one snapshot")
        super().__init__(retry=NoRetry())
        self._snapshots = [list(s) for s in snapshots]
        self._name = name
        self.call_count: int = 0

    @property
    def provider_name(self) -> str:
        return self._name

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        index = min(self.call_count, len(self._snapshots) - 1)
        self.call_count += 1
        return list(self._snapshots[index])


__all__ = [
    "FailingProvider",
    "FlakeyProvider",
    "SequenceProvider",
    "SlowProvider",
]

"""
dstat: job-status query and lifecycle tracking for batch jobs.

Asks one or more execution backends (local runner, cloud pipelines v1/v2)
about their jobs, normalizes what they report into uniform job/task
records with canonical event timelines, and returns a filtered, merged,
stably sorted result.

Example:
    >>> from dstat import DstatSettings, JobFilter, StatusEngine
    >>> async with StatusEngine.from_settings(DstatSettings(provider="local")) as engine:
    ...     result = await engine.query(JobFilter.build(statuses=["RUNNING"]))
"""

__version__ = "0.3.0"

from dstat.core.errors import (  # noqa: E402
    BackendAuthError,
    BackendRejected,
    BackendUnavailable,
    DstatError,
    InvalidCriteria,
    NormalizationError,
    UnknownProvider,
)
from dstat.core.settings import DstatSettings  # noqa: E402
from dstat.providers import (  # noqa: E402
    Event,
    JobFilter,
    JobRecord,
    ProviderRouter,
    TaskRecord,
    TaskStatus,
)
from dstat.query import QueryResult, StatusEngine  # noqa: E402
from dstat.render import render  # noqa: E402

__all__ = [
    "BackendAuthError",
    "BackendRejected",
    "BackendUnavailable",
    "DstatError",
    "DstatSettings",
    "Event",
    "InvalidCriteria",
    "JobFilter",
    "JobRecord",
    "NormalizationError",
    "ProviderRouter",
    "QueryResult",
    "StatusEngine",
    "TaskRecord",
    "TaskStatus",
    "UnknownProvider",
    "__version__",
    "render",
]

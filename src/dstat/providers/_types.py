"""Provider adapter types and protocol for the status engine.

This module defines the uniform record model every provider produces and
the capability surface the engine talks to:

- TaskStatus: Derived task/job status vocabulary
- Event: One timestamped state transition in a task's timeline
- TaskRecord: One execution unit within a job, with its event timeline
- JobRecord: A logical job, possibly fanned out into several tasks
- JobFilter: Validated query criteria (ids, names, users, labels, ...)
- ProviderCapabilities: Which criteria a backend applies natively
- ProviderHealth: Provider reachability check result
- ProviderAdapter: Protocol implemented by every backend

Design Notes:
    Status is never stored.  ``TaskRecord.status`` is a pure function of
    the task's events and ``JobRecord.status`` is a pure function of its
    tasks, so a snapshot of records always renders the same way.

    Provider-specific data flows through ``provider_attributes`` (an open
    mapping) and ``raw`` (the native payload), never through new fields.

Architecture:

    .. code-block:: text

        ┌───────────────────────────────────────────────────────────┐
        │                   _types.py Module Map                    │
        ├───────────────────────────────────────────────────────────┤
        │                                                           │
        │   JobFilter ──────────► ProviderAdapter.list_jobs()       │
        │   (validated criteria)        │                           │
        │                               ▼                           │
        │                          JobRecord                        │
        │                          job_id, job_name, create_time    │
        │                          labels, provider, user_id        │
        │                               │ tasks                     │
        │                               ▼                           │
        │                          TaskRecord                       │
        │                          task_id, provider_attributes     │
        │                               │ events                    │
        │                               ▼                           │
        │                          Event(name, timestamp)           │
        │                                                           │
        │   TaskRecord.status = derive_task_status(events)          │
        │   JobRecord.status  = derive_job_status(latest attempts)  │
        └───────────────────────────────────────────────────────────┘

    .. mermaid::

        graph LR
            JF[JobFilter] -->|"criteria"| PA[ProviderAdapter]
            PA -->|"returns"| JR[JobRecord]
            JR -->|"tasks"| TR[TaskRecord]
            TR -->|"events"| EV[Event]
            PC[ProviderCapabilities] -->|"pushdown hints"| PA

See Also:
    dstat.providers.events: Event Timeline Normalizer
    dstat.query.filters: Filter Engine
    dstat.query.aggregate: Aggregator/Sorter
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from dstat.core.errors import InvalidCriteria
from dstat.core.timestamps import age_to_create_time, parse_timestamp, to_iso8601


# ---------------------------------------------------------------------------
# Status and event vocabulary
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Derived status of a task or job.

    ``UNKNOWN`` is the degraded status of a task whose provider events could
    not be normalized; it never comes from a backend directly.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    CANCELED = "CANCELED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        """Whether the task has reached a final state."""
        return self in (TaskStatus.SUCCESS, TaskStatus.FAILURE, TaskStatus.CANCELED)


STATUS_WILDCARD = "*"

# Canonical event vocabulary, in lifecycle order.
START = "start"
PULLING_IMAGE = "pulling-image"
LOCALIZING_FILES = "localizing-files"
RUNNING_DOCKER = "running-docker"
DELOCALIZING_FILES = "delocalizing-files"
OK = "ok"
FAIL = "fail"
CANCELED = "canceled"

CANONICAL_EVENTS: tuple[str, ...] = (
    START,
    PULLING_IMAGE,
    LOCALIZING_FILES,
    RUNNING_DOCKER,
    DELOCALIZING_FILES,
    OK,
    FAIL,
    CANCELED,
)

TERMINAL_EVENT_STATUS: dict[str, TaskStatus] = {
    OK: TaskStatus.SUCCESS,
    FAIL: TaskStatus.FAILURE,
    CANCELED: TaskStatus.CANCELED,
}

STATUS_TERMINAL_EVENT: dict[TaskStatus, str] = {
    status: name for name, status in TERMINAL_EVENT_STATUS.items()
}


@dataclass(frozen=True)
class Event:
    """A timestamped state transition in one task's lifecycle.

    Attributes:
        name: Canonical name, or the provider's text for pass-through events.
        timestamp: Backend clock value (aware UTC).
        canonical: True when ``name`` is part of the canonical vocabulary and
            this is its first occurrence in the timeline.
        description: Provider-native text the event was mapped from.
        detail: Provider-native structured fields (zone, instance, ...).
    """

    name: str
    timestamp: datetime
    canonical: bool = True
    description: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.canonical and self.name in TERMINAL_EVENT_STATUS

    def to_dict(self, *, full: bool = False) -> dict[str, Any]:
        """Serialize as ``{name, timestamp}``; ``full`` adds native detail."""
        d: dict[str, Any] = {
            "name": self.name,
            "timestamp": to_iso8601(self.timestamp),
        }
        if full:
            if self.description and self.description != self.name:
                d["description"] = self.description
            if self.detail:
                d["detail"] = dict(self.detail)
        return d


def derive_task_status(events: Iterable[Event], *, degraded: bool = False) -> TaskStatus:
    """Compute a task's status from its event timeline.

    - degraded timeline → UNKNOWN
    - last canonical terminal event decides (ok / fail / canceled)
    - any event at all → RUNNING
    - no events → PENDING

    Example:
        >>> derive_task_status([])
        <TaskStatus.PENDING: 'PENDING'>
    """
    if degraded:
        return TaskStatus.UNKNOWN
    seen_any = False
    status = TaskStatus.RUNNING
    for event in events:
        seen_any = True
        if event.is_terminal:
            status = TERMINAL_EVENT_STATUS[event.name]
    return status if seen_any else TaskStatus.PENDING


# Least-advanced first. FAILURE and the all-SUCCESS case are handled before
# this ordering applies.
_JOB_STATUS_ORDER: tuple[TaskStatus, ...] = (
    TaskStatus.UNKNOWN,
    TaskStatus.PENDING,
    TaskStatus.RUNNING,
    TaskStatus.CANCELED,
    TaskStatus.SUCCESS,
)


def derive_job_status(task_statuses: Iterable[TaskStatus]) -> TaskStatus:
    """Aggregate task statuses into a job status.

    - no tasks → PENDING (just submitted)
    - any FAILURE → FAILURE
    - every task SUCCESS → SUCCESS
    - otherwise the least-advanced task status

    Example:
        >>> derive_job_status([TaskStatus.SUCCESS, TaskStatus.RUNNING])
        <TaskStatus.RUNNING: 'RUNNING'>
    """
    statuses = list(task_statuses)
    if not statuses:
        return TaskStatus.PENDING
    if TaskStatus.FAILURE in statuses:
        return TaskStatus.FAILURE
    if all(s is TaskStatus.SUCCESS for s in statuses):
        return TaskStatus.SUCCESS
    return min(statuses, key=_JOB_STATUS_ORDER.index)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaskRecord:
    """One execution unit within a job.

    Attributes:
        task_id: Identifier unique within the job; None for single-task jobs.
        task_attempt: Retry attempt number, when the backend tracks one.
        events: Normalized timeline in emission order (append-only).
        provider_attributes: Backend metadata (zone, instance-name, ...);
            empty until the backend schedules the task.
        status_message: Provider message (error text, last log line).
        raw: Provider-native payload, for ``provider-json`` output.
        degraded: Normalization error message, when the timeline is partial.
    """

    task_id: str | None = None
    task_attempt: int | None = None
    events: tuple[Event, ...] = ()
    provider_attributes: dict[str, Any] = field(default_factory=dict)
    status_message: str | None = None
    raw: dict[str, Any] | None = None
    degraded: str | None = None

    @property
    def status(self) -> TaskStatus:
        return derive_task_status(self.events, degraded=self.degraded is not None)

    @property
    def canonical_events(self) -> tuple[Event, ...]:
        return tuple(e for e in self.events if e.canonical)

    @property
    def last_update(self) -> datetime | None:
        return self.events[-1].timestamp if self.events else None

    @property
    def dedup_key(self) -> tuple[str | None, int | None]:
        return (self.task_id, self.task_attempt)


def latest_attempts(tasks: Iterable[TaskRecord]) -> tuple[TaskRecord, ...]:
    """The highest attempt of each task id, in first-seen order.

    A retry is the same task run again, so only its newest attempt counts
    toward job status. Tasks without an attempt number are kept as they are;
    equal attempts keep the longer timeline.
    """
    latest: dict[tuple[str, Any], TaskRecord] = {}
    for index, task in enumerate(tasks):
        if task.task_attempt is None:
            latest[("snapshot", index)] = task
            continue
        key = ("task", task.task_id)
        current = latest.get(key)
        if current is None or _attempt_rank(task) > _attempt_rank(current):
            latest[key] = task
    return tuple(latest.values())


def _attempt_rank(task: TaskRecord) -> tuple[int, int]:
    return (task.task_attempt or 0, len(task.events))


@dataclass(frozen=True)
class JobRecord:
    """A logical unit of work submitted once.

    Attributes:
        job_id: Opaque unique identifier assigned at submission.
        job_name: User-supplied or derived name (not unique).
        create_time: Submission time (aware UTC); the canonical sort key.
        provider: Name of the backend owning the job.
        labels: User-defined labels set at submission.
        user_id: Submitting user, when the backend records one.
        tasks: Task records, every attempt included; empty while the job is
            just being submitted.
    """

    job_id: str
    job_name: str
    create_time: datetime
    provider: str
    labels: dict[str, str] = field(default_factory=dict)
    user_id: str | None = None
    tasks: tuple[TaskRecord, ...] = ()

    @property
    def current_tasks(self) -> tuple[TaskRecord, ...]:
        """Latest attempt of each task."""
        return latest_attempts(self.tasks)

    @property
    def status(self) -> TaskStatus:
        return derive_job_status(task.status for task in self.current_tasks)

    @property
    def key(self) -> tuple[str, str]:
        """Identity across providers."""
        return (self.provider, self.job_id)

    @property
    def last_update(self) -> datetime:
        updates = [t.last_update for t in self.tasks if t.last_update is not None]
        return max(updates) if updates else self.create_time

    @property
    def has_events(self) -> bool:
        return any(task.events for task in self.tasks)


# ---------------------------------------------------------------------------
# Query criteria
# ---------------------------------------------------------------------------

_LABEL_NAME = re.compile(r"^[a-z]([-_a-z0-9]*)?$")
_LABEL_VALUE = re.compile(r"^[-_a-z0-9]*$")
_LABEL_MAX_LENGTH = 63


def parse_label(text: str) -> tuple[str, str]:
    """Parse and validate a ``key=value`` label predicate.

    Raises:
        InvalidCriteria: On missing ``=`` or invalid key/value characters.
    """
    key, sep, value = text.partition("=")
    if not sep:
        raise InvalidCriteria(f"Label {text!r} must have the form key=value")
    if len(key) > _LABEL_MAX_LENGTH or not _LABEL_NAME.match(key):
        raise InvalidCriteria(
            f"Invalid label name {key!r}: must start with a lowercase letter and "
            f"contain only lowercase letters, digits, '-' and '_' (max {_LABEL_MAX_LENGTH})"
        )
    if len(value) > _LABEL_MAX_LENGTH or not _LABEL_VALUE.match(value):
        raise InvalidCriteria(
            f"Invalid label value {value!r} for {key!r}: only lowercase letters, "
            f"digits, '-' and '_' are allowed (max {_LABEL_MAX_LENGTH})"
        )
    return key, value


def _id_set(values: Iterable[str] | None, what: str) -> frozenset[str] | None:
    if values is None:
        return None
    if isinstance(values, str):
        values = [values]
    cleaned = set()
    for value in values:
        if value is None or not str(value).strip():
            raise InvalidCriteria(f"Empty {what} in query")
        cleaned.add(str(value).strip())
    if not cleaned or STATUS_WILDCARD in cleaned:
        return None
    return frozenset(cleaned)


@dataclass(frozen=True)
class JobFilter:
    """Validated, immutable query criteria.

    Every field is optional; ``None`` means "no restriction on this
    dimension". Repeated identifiers collapse into sets, so a query for
    ``[C, C, B]`` is the same query as ``[B, C]``.

    Example:
        >>> flt = JobFilter.build(
        ...     statuses=["RUNNING", "SUCCESS"],
        ...     job_ids=["job-c", "job-c", "job-b"],
        ...     labels=["test-token=abc"],
        ...     age="5s",
        ... )
        >>> sorted(flt.job_ids)
        ['job-b', 'job-c']
    """

    job_ids: frozenset[str] | None = None
    job_names: frozenset[str] | None = None
    user_ids: frozenset[str] | None = None
    task_ids: frozenset[str] | None = None
    labels: frozenset[tuple[str, str]] = frozenset()
    statuses: frozenset[TaskStatus] | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None

    @classmethod
    def build(
        cls,
        *,
        statuses: Iterable[str] | None = None,
        job_ids: Iterable[str] | None = None,
        job_names: Iterable[str] | None = None,
        user_ids: Iterable[str] | None = None,
        task_ids: Iterable[str] | None = None,
        labels: Iterable[str | tuple[str, str]] | None = None,
        age: str | None = None,
        created_after: datetime | str | None = None,
        created_before: datetime | str | None = None,
        now: datetime | None = None,
    ) -> JobFilter:
        """Validate raw user input into a ``JobFilter``.

        Raises:
            InvalidCriteria: If any dimension is malformed or the time window
                is empty.
        """
        parsed_statuses: frozenset[TaskStatus] | None = None
        if statuses is not None:
            if isinstance(statuses, str):
                statuses = [statuses]
            wanted = {str(s).strip().upper() for s in statuses}
            if wanted and STATUS_WILDCARD not in wanted:
                try:
                    parsed_statuses = frozenset(TaskStatus(s) for s in wanted)
                except ValueError as exc:
                    valid = ", ".join(s.value for s in TaskStatus)
                    raise InvalidCriteria(
                        f"Unknown status in {sorted(wanted)}; expected one of: {valid} or '*'"
                    ) from exc

        parsed_labels: set[tuple[str, str]] = set()
        for label in labels or ():
            if isinstance(label, tuple):
                parsed_labels.add(parse_label(f"{label[0]}={label[1]}"))
            else:
                parsed_labels.add(parse_label(label))
        keys = [k for k, _ in parsed_labels]
        if len(keys) != len(set(keys)):
            raise InvalidCriteria(f"Label key given with conflicting values: {sorted(parsed_labels)}")

        try:
            lower = age_to_create_time(age, now)
            if created_after is not None:
                after = parse_timestamp(created_after)
                lower = max(lower, after) if lower else after
            upper = parse_timestamp(created_before) if created_before is not None else None
        except ValueError as exc:
            raise InvalidCriteria(str(exc), cause=exc) from exc

        if lower is not None and upper is not None and lower > upper:
            raise InvalidCriteria(
                f"Empty time window: created after {to_iso8601(lower)} "
                f"and before {to_iso8601(upper)}"
            )

        return cls(
            job_ids=_id_set(job_ids, "job id"),
            job_names=_id_set(job_names, "job name"),
            user_ids=_id_set(user_ids, "user id"),
            task_ids=_id_set(task_ids, "task id"),
            labels=frozenset(parsed_labels),
            statuses=parsed_statuses,
            created_after=lower,
            created_before=upper,
        )

    @classmethod
    def for_job_ids(cls, job_ids: Iterable[str]) -> JobFilter:
        """Criteria matching exactly the given ids, any status."""
        return cls.build(job_ids=list(job_ids))

    @property
    def is_unrestricted(self) -> bool:
        return self == JobFilter()

    def to_dict(self) -> dict[str, Any]:
        """Serialize set fields (for logging)."""
        d: dict[str, Any] = {}
        for name in ("job_ids", "job_names", "user_ids", "task_ids"):
            value = getattr(self, name)
            if value is not None:
                d[name] = sorted(value)
        if self.labels:
            d["labels"] = sorted(f"{k}={v}" for k, v in self.labels)
        if self.statuses is not None:
            d["statuses"] = sorted(s.value for s in self.statuses)
        if self.created_after:
            d["created_after"] = to_iso8601(self.created_after)
        if self.created_before:
            d["created_before"] = to_iso8601(self.created_before)
        return d


# ---------------------------------------------------------------------------
# Capabilities and health
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderCapabilities:
    """Which criteria a backend can apply natively.

    These are pushdown hints only. The Filter Engine re-applies the full
    ``JobFilter`` to every returned record regardless.

    .. code-block:: text

        ┌──────────────────┬───────┬───────────┬───────────┐
        │ Capability        │ local │ google v1 │ google v2 │
        ├──────────────────┼───────┼───────────┼───────────┤
        │ job ids           │   ✓   │     ✓     │     ✓     │
        │ job names         │   ✗   │     ✓     │     ✓     │
        │ users             │   ✗   │     ✓     │     ✓     │
        │ labels            │   ✗   │     ✓     │     ✓     │
        │ statuses          │   ✗   │     ✓     │     ✓     │
        │ create time       │   ✗   │     ✓     │     ✓     │
        │ OR within a field │   -   │     ✗     │     ✓     │
        └──────────────────┴───────┴───────────┴───────────┘
    """

    filter_job_ids: bool = False
    filter_job_names: bool = False
    filter_user_ids: bool = False
    filter_labels: bool = False
    filter_statuses: bool = False
    filter_create_time: bool = False
    or_within_field: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "filter_job_ids": self.filter_job_ids,
            "filter_job_names": self.filter_job_names,
            "filter_user_ids": self.filter_user_ids,
            "filter_labels": self.filter_labels,
            "filter_statuses": self.filter_statuses,
            "filter_create_time": self.filter_create_time,
            "or_within_field": self.or_within_field,
        }


@dataclass(frozen=True)
class ProviderHealth:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    message: str | None = None
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"healthy": self.healthy, "provider": self.provider}
        if self.message:
            d["message"] = self.message
        if self.latency_ms is not None:
            d["latency_ms"] = self.latency_ms
        return d


# ---------------------------------------------------------------------------
# ProviderAdapter: the capability protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol for job-status backends.

    Every backend (local runner, cloud pipelines v1, cloud pipelines v2,
    in-memory stub) implements this protocol. The engine interacts with
    backends exclusively through these methods.

    All methods are async; suspension happens only at backend I/O.

    .. code-block:: text

        ProviderAdapter Protocol
        ┌────────────────────────────────────────────────────────┐
        │  list_jobs(criteria) → [JobRecord]  Query by filter    │
        │  describe(job_ids)  → [JobRecord]   Fetch known ids    │
        │  health()           → ProviderHealth                    │
        │  aclose()           → None          Release pool       │
        └────────────────────────────────────────────────────────┘
    """

    @property
    def provider_name(self) -> str:
        """Unique provider name (e.g. 'local', 'google-v2')."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Criteria the backend applies natively."""
        ...

    async def list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        """Return records matching *at least* the pushed-down criteria.

        Raises:
            BackendUnavailable: Transient failure after retries.
            BackendAuthError: Credentials rejected.
            BackendRejected: Request refused as malformed.
        """
        ...

    async def describe(self, job_ids: Iterable[str]) -> list[JobRecord]:
        """Return records for the given job ids (missing ids are skipped)."""
        ...

    async def health(self) -> ProviderHealth:
        """Check backend reachability."""
        ...

    async def aclose(self) -> None:
        """Release connections. Idempotent."""
        ...


__all__ = [
    "CANCELED",
    "CANONICAL_EVENTS",
    "DELOCALIZING_FILES",
    "Event",
    "FAIL",
    "JobFilter",
    "JobRecord",
    "LOCALIZING_FILES",
    "OK",
    "PULLING_IMAGE",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderHealth",
    "RUNNING_DOCKER",
    "START",
    "STATUS_TERMINAL_EVENT",
    "STATUS_WILDCARD",
    "TERMINAL_EVENT_STATUS",
    "TaskRecord",
    "TaskStatus",
    "derive_job_status",
    "derive_task_status",
    "latest_attempts",
    "parse_label",
]

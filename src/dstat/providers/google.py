"""Cloud pipeline providers (v1-style and v2-style operations).

Each backend operation is one *task* of a job; the operation's labels
carry the job identity (``job-id``, ``job-name``, ``user-id``, ``task-id``,
``task-attempt``) plus the user's own labels. Providers return one
single-task ``JobRecord`` per operation and the Aggregator merges tasks of
the same job.

Manifesto:
    - **Push down what the filter language can say:** ids, names, users,
      labels, statuses, create time
    - **Never lose a criterion:** the Filter Engine re-checks everything
    - **Status comes from events:** the native done/error state only fills
      in a terminal event the backend did not emit

Architecture:

    .. code-block:: text

        JobFilter
           │
           ├── GoogleV1Provider ("google")
           │     no OR in the filter language
           │     → one query per status × id/name/user combination
           │     → run concurrently (bounded), dedupe by operation name
           │
           └── GoogleV2Provider ("google-v2", "google-cls-v2")
                 OR groups in one filter string
                 → single paged query
           │
           ▼
        operation ──► _OperationView ──► JobRecord(tasks=(TaskRecord,))
                        labels, createTime, events, done/error, attributes

    Native status (terminal event synthesized at endTime when missing):

        done = false                 → RUNNING
        done, no error               → SUCCESS  (ok)
        done, error.code = 1         → CANCELED (canceled)
        done, any other error        → FAILURE  (fail)

Tags:
    dstat, providers, google, pipelines, operations

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from dstat.core.logging import get_logger
from dstat.core.timestamps import parse_timestamp, to_iso8601
from dstat.execution.retry import RetryStrategy
from dstat.providers._base import BaseProviderAdapter
from dstat.providers._types import (
    JobFilter,
    JobRecord,
    ProviderCapabilities,
    ProviderHealth,
    TaskRecord,
    TaskStatus,
)
from dstat.providers.events import (
    EventMapper,
    V2EventMapper,
    ensure_terminal_event,
    identity_mapper,
    normalize_timeline,
    worker_assignment,
)
from dstat.providers.transport import OperationsClient

logger = get_logger(__name__)

# Labels written by the submitter, not by the user.
RESERVED_LABELS = frozenset({"job-id", "job-name", "user-id", "task-id", "task-attempt", "dsub-version"})

CANCELED_ERROR_CODE = 1

# Statuses a backend filter can express.
_PUSHABLE_STATUSES = frozenset(
    {TaskStatus.RUNNING, TaskStatus.SUCCESS, TaskStatus.FAILURE, TaskStatus.CANCELED}
)


def operation_status(operation: Mapping[str, Any]) -> TaskStatus:
    """Native status of an operation from its ``done``/``error`` fields."""
    if not operation.get("done"):
        return TaskStatus.RUNNING
    error = operation.get("error")
    if not error:
        return TaskStatus.SUCCESS
    if error.get("code") == CANCELED_ERROR_CODE:
        return TaskStatus.CANCELED
    return TaskStatus.FAILURE


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


# ---------------------------------------------------------------------------
# Shared operations provider
# ---------------------------------------------------------------------------

class _OperationsProvider(BaseProviderAdapter):
    """Paging, conversion and lifecycle shared by the v1 and v2 providers."""

    def __init__(
        self,
        client: OperationsClient,
        *,
        name: str,
        project: str | None = None,
        page_size: int = 128,
        retry: RetryStrategy | None = None,
    ) -> None:
        super().__init__(retry=retry)
        self.client = client
        self.project = project
        self.page_size = page_size
        self._name = name

    @property
    def provider_name(self) -> str:
        return self._name

    async def _list_all(self, filter_str: str) -> list[dict[str, Any]]:
        operations: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            page = await self.client.list_operations(filter_str, self.page_size, page_token)
            operations.extend(page.operations)
            page_token = page.next_page_token
            if not page_token:
                return operations

    async def _do_health(self) -> ProviderHealth:
        await self.client.list_operations(self._base_filter(), 1)
        return ProviderHealth(healthy=True, provider=self.provider_name)

    async def _do_aclose(self) -> None:
        await self.client.aclose()

    def _base_filter(self) -> str:
        return ""

    def _to_records(self, operations: Iterable[Mapping[str, Any]]) -> list[JobRecord]:
        records = []
        for operation in operations:
            record = self._to_record(operation)
            if record is not None:
                records.append(record)
        return records

    def _to_record(self, operation: Mapping[str, Any]) -> JobRecord | None:
        metadata = operation.get("metadata") or {}
        labels = {str(k): str(v) for k, v in (metadata.get("labels") or {}).items()}
        name = str(operation.get("name", ""))
        job_id = labels.get("job-id") or name
        task_id = labels.get("task-id")

        try:
            create_time = parse_timestamp(metadata.get("createTime"))
        except ValueError as exc:
            logger.warning(
                "operation_skipped",
                provider=self.provider_name,
                operation=name,
                reason=f"no usable createTime: {exc}",
            )
            return None

        events, degraded = normalize_timeline(
            self._raw_events(metadata),
            self._mapper(operation),
            provider=self.provider_name,
            job_id=job_id,
            task_id=task_id,
        )
        status = operation_status(operation)
        error = operation.get("error") or {}
        status_message = error.get("message") or None
        if degraded is None:
            events = ensure_terminal_event(
                events, status, _end_time(metadata), message=status_message
            )

        attempt = labels.get("task-attempt")
        task = TaskRecord(
            task_id=task_id,
            task_attempt=int(attempt) if attempt and attempt.isdigit() else None,
            events=events,
            provider_attributes=self._attributes(operation),
            status_message=status_message,
            raw=dict(operation),
            degraded=degraded,
        )
        return JobRecord(
            job_id=job_id,
            job_name=labels.get("job-name") or job_id,
            create_time=create_time,
            provider=self.provider_name,
            labels={k: v for k, v in labels.items() if k not in RESERVED_LABELS},
            user_id=labels.get("user-id"),
            tasks=(task,),
        )

    # --- Per-API hooks ---

    def _raw_events(self, metadata: Mapping[str, Any]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def _mapper(self, operation: Mapping[str, Any]) -> EventMapper:
        raise NotImplementedError

    def _attributes(self, operation: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


def _end_time(metadata: Mapping[str, Any]) -> datetime | None:
    value = metadata.get("endTime")
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# v1: one query per value combination
# ---------------------------------------------------------------------------

class GoogleV1Provider(_OperationsProvider):
    """Pipelines v1-style operations (``google``).

    The v1 filter language joins terms with AND only, so criteria with
    several ids, names, users or statuses fan out into one backend query per
    combination. Queries run concurrently, at most ``max_concurrency`` at a
    time, and results are deduplicated by operation name.

    Example:
        >>> provider = GoogleV1Provider(client, project="my-project")
        >>> provider.build_filters(JobFilter.build(statuses=["RUNNING", "SUCCESS"]))
        ['projectId = my-project AND status = RUNNING',
         'projectId = my-project AND status = SUCCESS']
    """

    def __init__(
        self,
        client: OperationsClient,
        *,
        project: str | None = None,
        page_size: int = 128,
        max_concurrency: int = 8,
        retry: RetryStrategy | None = None,
        name: str = "google",
    ) -> None:
        super().__init__(client, name=name, project=project, page_size=page_size, retry=retry)
        self.max_concurrency = max_concurrency

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            filter_job_ids=True,
            filter_job_names=True,
            filter_user_ids=True,
            filter_labels=True,
            filter_statuses=True,
            filter_create_time=True,
            or_within_field=False,
        )

    def _base_filter(self) -> str:
        return f"projectId = {self.project}" if self.project else ""

    def build_filters(self, criteria: JobFilter) -> list[str]:
        """One AND-only filter string per value combination."""
        statuses: list[TaskStatus | None] = [None]
        if criteria.statuses is not None and criteria.statuses <= _PUSHABLE_STATUSES:
            statuses = sorted(criteria.statuses, key=lambda s: s.value)

        def values(field: frozenset[str] | None) -> list[str | None]:
            return sorted(field) if field is not None else [None]

        common = [self._base_filter()] if self.project else []
        for key, value in sorted(criteria.labels):
            common.append(f"labels.{key} = {value}")
        if criteria.created_after is not None:
            common.append(f"createTime >= {int(criteria.created_after.timestamp())}")

        filters = []
        for status, job_id, job_name, user_id in itertools.product(
            statuses,
            values(criteria.job_ids),
            values(criteria.job_names),
            values(criteria.user_ids),
        ):
            terms = list(common)
            if status is not None:
                terms.append(f"status = {status.value}")
            if job_id is not None:
                terms.append(f"labels.job-id = {job_id}")
            if job_name is not None:
                terms.append(f"labels.job-name = {job_name}")
            if user_id is not None:
                terms.append(f"labels.user-id = {user_id}")
            filters.append(" AND ".join(terms))
        return filters

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        filters = self.build_filters(criteria)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(filter_str: str) -> list[dict[str, Any]]:
            async with semaphore:
                return await self._list_all(filter_str)

        tasks = [asyncio.ensure_future(run(f)) for f in filters]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        unique: dict[str, dict[str, Any]] = {}
        for operations in results:
            for operation in operations:
                unique.setdefault(str(operation.get("name")), operation)
        logger.debug(
            "v1_queries_done",
            provider=self.provider_name,
            queries=len(filters),
            operations=len(unique),
        )
        return self._to_records(unique.values())

    def _raw_events(self, metadata: Mapping[str, Any]) -> list[Any]:
        events = metadata.get("events") or []
        if not isinstance(events, list):
            return [events]
        # Non-mapping entries pass through and degrade the task.
        return [
            {
                "description": event.get("description"),
                "timestamp": event.get("startTime") or event.get("timestamp"),
            }
            if isinstance(event, Mapping)
            else event
            for event in events
        ]

    def _mapper(self, operation: Mapping[str, Any]) -> EventMapper:
        return identity_mapper

    def _attributes(self, operation: Mapping[str, Any]) -> dict[str, Any]:
        metadata = operation.get("metadata") or {}
        compute = (metadata.get("runtimeMetadata") or {}).get("computeEngine") or {}
        attributes: dict[str, Any] = {}
        if compute.get("zone"):
            attributes["zone"] = compute["zone"]
        if compute.get("instanceName"):
            attributes["instance-name"] = compute["instanceName"]
        if compute.get("machineType"):
            attributes["machine-type"] = str(compute["machineType"]).rsplit("/", 1)[-1]
        return attributes


# ---------------------------------------------------------------------------
# v2: one query with OR groups
# ---------------------------------------------------------------------------

_V2_STATUS_FILTERS: dict[TaskStatus, str] = {
    TaskStatus.RUNNING: "done = false",
    TaskStatus.SUCCESS: "(done = true AND NOT error:*)",
    TaskStatus.CANCELED: f"error = {CANCELED_ERROR_CODE}",
    TaskStatus.FAILURE: f"error > {CANCELED_ERROR_CODE}",
}

_USER_COMMAND_ACTION = "user-command"


class GoogleV2Provider(_OperationsProvider):
    """Pipelines v2-style operations (``google-v2`` and ``google-cls-v2``).

    The v2 filter language supports OR, so every request is a single paged
    query. Events come back newest first; they are reversed into emission
    order before normalization.

    Example:
        >>> provider = GoogleV2Provider(client, name="google-cls-v2")
        >>> provider.build_filter(JobFilter.build(job_ids=["a", "b"], statuses=["RUNNING"]))
        '(labels."job-id" = "a" OR labels."job-id" = "b") AND (done = false)'
    """

    def __init__(
        self,
        client: OperationsClient,
        *,
        project: str | None = None,
        page_size: int = 128,
        retry: RetryStrategy | None = None,
        name: str = "google-v2",
    ) -> None:
        super().__init__(client, name=name, project=project, page_size=page_size, retry=retry)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            filter_job_ids=True,
            filter_job_names=True,
            filter_user_ids=True,
            filter_labels=True,
            filter_statuses=True,
            filter_create_time=True,
            or_within_field=True,
        )

    def build_filter(self, criteria: JobFilter) -> str:
        """A single filter string with OR groups per field."""
        groups: list[str] = []

        def any_of(label: str, values: frozenset[str] | None) -> None:
            if values is not None:
                terms = [f'labels."{label}" = {_quote(v)}' for v in sorted(values)]
                groups.append("(" + " OR ".join(terms) + ")")

        any_of("job-id", criteria.job_ids)
        any_of("job-name", criteria.job_names)
        any_of("user-id", criteria.user_ids)
        any_of("task-id", criteria.task_ids)
        for key, value in sorted(criteria.labels):
            groups.append(f'labels."{key}" = {_quote(value)}')
        if criteria.statuses is not None and criteria.statuses <= _PUSHABLE_STATUSES:
            terms = [_V2_STATUS_FILTERS[s] for s in sorted(criteria.statuses, key=lambda s: s.value)]
            groups.append("(" + " OR ".join(terms) + ")")
        if criteria.created_after is not None:
            groups.append(f"metadata.createTime >= {_quote(to_iso8601(criteria.created_after))}")
        if criteria.created_before is not None:
            groups.append(f"metadata.createTime < {_quote(to_iso8601(criteria.created_before))}")
        return " AND ".join(groups)

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        filter_str = self.build_filter(criteria)
        operations = await self._list_all(filter_str)
        logger.debug(
            "v2_query_done",
            provider=self.provider_name,
            filter=filter_str,
            operations=len(operations),
        )
        return self._to_records(operations)

    def _raw_events(self, metadata: Mapping[str, Any]) -> list[dict[str, Any]]:
        events = metadata.get("events") or []
        if not isinstance(events, list):
            # Surfaces as a malformed event and degrades the task.
            return [events]
        return list(reversed(events))

    def _mapper(self, operation: Mapping[str, Any]) -> EventMapper:
        return V2EventMapper(
            user_image=self._user_image(operation),
            succeeded=operation_status(operation) is TaskStatus.SUCCESS,
        )

    @staticmethod
    def _user_image(operation: Mapping[str, Any]) -> str | None:
        pipeline = (operation.get("metadata") or {}).get("pipeline") or {}
        for action in pipeline.get("actions") or []:
            action_labels = action.get("labels") or {}
            if _USER_COMMAND_ACTION in (action.get("name"), action_labels.get("dsub-action")):
                return action.get("imageUri")
        return None

    def _attributes(self, operation: Mapping[str, Any]) -> dict[str, Any]:
        metadata = operation.get("metadata") or {}
        attributes: dict[str, Any] = {}

        # Worker assignment carries where the task actually ran.
        events = metadata.get("events")
        for event in events if isinstance(events, list) else []:
            if not isinstance(event, Mapping):
                continue
            details = event.get("details")
            if not isinstance(details, Mapping):
                details = {}
            assigned = worker_assignment(event.get("description"))
            if details.get("zone") or assigned:
                attributes["zone"] = details.get("zone") or assigned.get("zone")
                attributes["instance-name"] = details.get("instance") or assigned.get("instance-name")
                break

        resources = (metadata.get("pipeline") or {}).get("resources") or {}
        vm = resources.get("virtualMachine") or {}
        if vm.get("machineType"):
            attributes["machine-type"] = vm["machineType"]
        if "preemptible" in vm:
            attributes["preemptible"] = bool(vm["preemptible"])
        if resources.get("regions"):
            attributes["regions"] = list(resources["regions"])
        if resources.get("zones"):
            attributes["zones"] = list(resources["zones"])
        if vm.get("bootDiskSizeGb"):
            attributes["boot-disk-size"] = vm["bootDiskSizeGb"]
        service_account = (vm.get("serviceAccount") or {}).get("email")
        if service_account:
            attributes["service-account"] = service_account
        network = vm.get("network") or {}
        if network.get("network") or network.get("name"):
            attributes["network"] = network.get("network") or network.get("name")
        return {k: v for k, v in attributes.items() if v is not None}


__all__ = [
    "CANCELED_ERROR_CODE",
    "GoogleV1Provider",
    "GoogleV2Provider",
    "RESERVED_LABELS",
    "operation_status",
]

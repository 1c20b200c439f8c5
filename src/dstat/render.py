"""
Result Renderer: turns job records into stable, machine-parseable output.

Rendered record keys, in this order::

    job-id, job-name, user-id, provider, status, status-message,
    create-time, last-update, task-count, labels, events
    [full:] provider-attributes, provider-events, tasks

``events`` lists canonical lifecycle events only (``{name, timestamp}``),
so consumers can match them against the fixed vocabulary. The full view
adds ``provider-events`` with every normalized event (pass-through ones
included) and the provider's native description/detail.

Formats:
    - **yaml:** default; ``[]`` for no matches
    - **json:** same structure as yaml
    - **text:** rich table for terminals
    - **provider-json:** the providers' native payloads

Tags:
    render, yaml, json, rich, output, dstat

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import io
import json
from collections.abc import Iterable
from enum import Enum
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table

from dstat.core.timestamps import to_iso8601
from dstat.providers._types import JobRecord, TaskRecord, TaskStatus


class OutputFormat(str, Enum):
    YAML = "yaml"
    JSON = "json"
    TEXT = "text"
    PROVIDER_JSON = "provider-json"


_STATUS_STYLE: dict[TaskStatus, str] = {
    TaskStatus.SUCCESS: "green",
    TaskStatus.FAILURE: "red",
    TaskStatus.CANCELED: "yellow",
    TaskStatus.RUNNING: "cyan",
    TaskStatus.PENDING: "dim",
    TaskStatus.UNKNOWN: "magenta",
}


# ── Record → dict ────────────────────────────────────────────────────────


def _status_message(record: JobRecord) -> str | None:
    # The message of a failing task explains the job status best.
    status = record.status
    current = record.current_tasks
    for task in current:
        if task.status is status and task.status_message:
            return task.status_message
    for task in current:
        if task.status_message:
            return task.status_message
    for task in record.tasks:
        if task.degraded:
            return task.degraded
    return None


def _tagged(task: TaskRecord, event: dict[str, Any], multi: bool) -> dict[str, Any]:
    if multi:
        return {"task-id": task.task_id, **event}
    return event


def _task_to_dict(task: TaskRecord) -> dict[str, Any]:
    d: dict[str, Any] = {
        "task-id": task.task_id,
        "task-attempt": task.task_attempt,
        "status": task.status.value,
        "status-message": task.status_message,
        "last-update": to_iso8601(task.last_update),
        "events": [e.to_dict() for e in task.canonical_events],
        "provider-attributes": dict(task.provider_attributes),
    }
    if task.degraded:
        d["degraded"] = task.degraded
    return d


def record_to_dict(record: JobRecord, *, full: bool = False) -> dict[str, Any]:
    """Render one job in the stable key order.

    For single-task jobs the top-level events and attributes are that
    task's. For multi-task jobs the per-task timelines are concatenated in
    task order, each event tagged with its ``task-id``.
    """
    multi = len(record.tasks) > 1
    events = [
        _tagged(task, event.to_dict(), multi)
        for task in record.tasks
        for event in task.canonical_events
    ]
    d: dict[str, Any] = {
        "job-id": record.job_id,
        "job-name": record.job_name,
        "user-id": record.user_id,
        "provider": record.provider,
        "status": record.status.value,
        "status-message": _status_message(record),
        "create-time": to_iso8601(record.create_time),
        "last-update": to_iso8601(record.last_update),
        "task-count": len(record.current_tasks),
        "labels": dict(sorted(record.labels.items())),
        "events": events,
    }
    if full:
        d["provider-attributes"] = (
            dict(record.tasks[0].provider_attributes) if len(record.tasks) == 1 else {}
        )
        d["provider-events"] = [
            _tagged(task, event.to_dict(full=True) | {"canonical": event.canonical}, multi)
            for task in record.tasks
            for event in task.events
        ]
        d["tasks"] = [_task_to_dict(task) for task in record.tasks]
    return d


def records_to_dicts(records: Iterable[JobRecord], *, full: bool = False) -> list[dict[str, Any]]:
    return [record_to_dict(record, full=full) for record in records]


def provider_payloads(records: Iterable[JobRecord]) -> list[dict[str, Any]]:
    """Native payloads, one per task; records without one fall back to full view."""
    payloads = []
    for record in records:
        raws = [task.raw for task in record.tasks if task.raw is not None]
        if raws:
            payloads.extend(raws)
        else:
            payloads.append(record_to_dict(record, full=True))
    return payloads


def summarize(records: Iterable[JobRecord]) -> list[dict[str, Any]]:
    """Task counts per (job-name, status), in first-seen order.

    Each task is counted once, at the status of its latest attempt.
    """
    counts: dict[tuple[str, str], int] = {}
    for record in records:
        if not record.tasks:
            key = (record.job_name, record.status.value)
            counts.setdefault(key, 0)
        for task in record.current_tasks:
            key = (record.job_name, task.status.value)
            counts[key] = counts.get(key, 0) + 1
    return [
        {"job-name": name, "status": status, "task-count": count}
        for (name, status), count in counts.items()
    ]


# ── Formats ──────────────────────────────────────────────────────────────


def _to_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False, allow_unicode=True)


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str) + "\n"


def _to_text(rows: list[dict[str, Any]], *, title: str | None = None) -> str:
    buffer = io.StringIO()
    console = Console(file=buffer, width=160, force_terminal=False, color_system=None)
    if not rows:
        console.print("No matching jobs.")
        return buffer.getvalue()

    table = Table(title=title, show_lines=False, pad_edge=False)
    columns = [c for c in rows[0] if c not in ("labels", "events", "provider-events", "tasks")]
    for column in columns:
        table.add_column(column, overflow="fold")
    for row in rows:
        cells = []
        for column in columns:
            value = row.get(column)
            if column == "status" and value in TaskStatus.__members__:
                style = _STATUS_STYLE[TaskStatus(value)]
                cells.append(f"[{style}]{value}[/{style}]")
            elif isinstance(value, dict):
                cells.append(", ".join(f"{k}={v}" for k, v in value.items()))
            else:
                cells.append("" if value is None else str(value))
        table.add_row(*cells)
    console.print(table)
    return buffer.getvalue()


def _text_rows(records: list[JobRecord], full: bool) -> list[dict[str, Any]]:
    rows = []
    for record in records:
        row: dict[str, Any] = {
            "job-name": record.job_name,
            "status": record.status.value,
            "last-update": to_iso8601(record.last_update),
        }
        if full:
            row = {
                "job-id": record.job_id,
                **row,
                "provider": record.provider,
                "task-count": len(record.current_tasks),
                "status-message": _status_message(record),
            }
        rows.append(row)
    return rows


def render(
    records: Iterable[JobRecord],
    fmt: OutputFormat | str = OutputFormat.YAML,
    *,
    full: bool = False,
    summary: bool = False,
) -> str:
    """Render records in the requested format.

    Raises:
        ValueError: For an unknown format name.
    """
    fmt = OutputFormat(fmt)
    records = list(records)

    if summary:
        rows = summarize(records)
        if fmt is OutputFormat.TEXT:
            return _to_text(rows, title="Summary")
        return _to_json(rows) if fmt is OutputFormat.JSON else _to_yaml(rows)

    if fmt is OutputFormat.PROVIDER_JSON:
        return _to_json(provider_payloads(records))
    if fmt is OutputFormat.TEXT:
        return _to_text(_text_rows(records, full))
    data = records_to_dicts(records, full=full)
    if fmt is OutputFormat.JSON:
        return _to_json(data)
    return _to_yaml(data)


__all__ = [
    "OutputFormat",
    "provider_payloads",
    "record_to_dict",
    "records_to_dicts",
    "render",
    "summarize",
]

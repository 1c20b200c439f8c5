"""
Test support utilities for dstat tests.

Builders for records, on-disk local jobs and cloud operation payloads that
don't fit as pytest fixtures but are shared across test files.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import yaml

from dstat.providers._types import Event, JobRecord, TaskRecord

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

LIFECYCLE = ("start", "pulling-image", "localizing-files", "running-docker", "delocalizing-files")

STATUS_EVENTS: dict[str, tuple[str, ...]] = {
    "PENDING": (),
    "RUNNING": LIFECYCLE[:4],
    "SUCCESS": LIFECYCLE + ("ok",),
    "FAILURE": LIFECYCLE[:4] + ("fail",),
    "CANCELED": ("start", "canceled"),
}


def ts(seconds: float) -> datetime:
    """``T0`` plus an offset in seconds."""
    return T0 + timedelta(seconds=seconds)


def make_events(*names: str, start: float = 0) -> tuple[Event, ...]:
    return tuple(Event(name, ts(start + i), True, name) for i, name in enumerate(names))


def make_task(
    status: str = "RUNNING",
    *,
    task_id: str | None = None,
    attempt: int | None = None,
    start: float = 0,
    attributes: dict[str, Any] | None = None,
    message: str | None = None,
    degraded: str | None = None,
) -> TaskRecord:
    return TaskRecord(
        task_id=task_id,
        task_attempt=attempt,
        events=make_events(*STATUS_EVENTS[status], start=start),
        provider_attributes=attributes or {},
        status_message=message,
        degraded=degraded,
    )


def make_job(
    job_id: str,
    *,
    name: str | None = None,
    created: float = 0,
    status: str = "RUNNING",
    labels: dict[str, str] | None = None,
    user: str | None = "alice",
    provider: str = "stub",
    tasks: tuple[TaskRecord, ...] | None = None,
) -> JobRecord:
    """A job whose single task has the event timeline of ``status``."""
    return JobRecord(
        job_id=job_id,
        job_name=name or job_id,
        create_time=ts(created),
        provider=provider,
        labels=labels or {},
        user_id=user,
        tasks=tasks if tasks is not None else (make_task(status, start=created),),
    )


def write_local_job(
    root: Path,
    job_id: str,
    *,
    name: str | None = None,
    created: datetime = T0,
    events: tuple[str, ...] = ("start",),
    status: str | None = "RUNNING",
    labels: dict[str, str] | None = None,
    task_id: str | None = None,
    attempt: int | None = None,
    user: str = "alice",
    end_time: datetime | None = None,
    message: str | None = None,
) -> Path:
    """Write one task of a local-runner job tree and return its directory."""
    task_dir = root / job_id / "task" / (task_id or "task")
    task_dir.mkdir(parents=True, exist_ok=True)
    meta: dict[str, Any] = {
        "job-id": job_id,
        "job-name": name or job_id,
        "user-id": user,
        "create-time": created.isoformat(),
        "labels": labels or {},
    }
    if task_id is not None:
        meta["task-id"] = task_id
    if attempt is not None:
        meta["task-attempt"] = attempt
    (task_dir / "meta.yaml").write_text(yaml.safe_dump(meta), encoding="utf-8")
    lines = [f"{event},{(created + timedelta(seconds=i)).isoformat()}" for i, event in enumerate(events)]
    (task_dir / "events.txt").write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    if status is not None:
        (task_dir / "status.txt").write_text(status + "\n", encoding="utf-8")
    if end_time is not None:
        (task_dir / "end-time.txt").write_text(end_time.isoformat(), encoding="utf-8")
    if message is not None:
        (task_dir / "status-message.txt").write_text(message, encoding="utf-8")
    return task_dir


def v2_operation(
    job_id: str,
    *,
    name: str | None = None,
    number: int = 1,
    created: datetime = T0,
    done: bool = False,
    error_code: int | None = None,
    events: list[str] | None = None,
    labels: dict[str, str] | None = None,
    task_id: str | None = None,
    zone: str = "us-central1-f",
    image: str = "ubuntu:22.04",
) -> dict[str, Any]:
    """A v2-style operation; ``events`` are given oldest first."""
    all_labels = {"job-id": job_id, "job-name": name or job_id, "user-id": "alice", **(labels or {})}
    if task_id is not None:
        all_labels["task-id"] = task_id
    raw_events = []
    for i, description in enumerate(events or []):
        event: dict[str, Any] = {
            "timestamp": (created + timedelta(seconds=i + 1)).isoformat().replace("+00:00", "Z"),
            "description": description,
        }
        if description.startswith("Worker") and "assigned" in description:
            event["details"] = {"@type": "WorkerAssignedEvent", "zone": zone, "instance": "google-pipelines-worker-1"}
        raw_events.append(event)
    operation: dict[str, Any] = {
        "name": f"projects/my-project/operations/{number}",
        "done": done,
        "metadata": {
            "createTime": created.isoformat().replace("+00:00", "Z"),
            "labels": all_labels,
            "events": list(reversed(raw_events)),
            "pipeline": {
                "actions": [
                    {"name": "localization", "imageUri": "google/cloud-sdk:slim"},
                    {"name": "user-command", "imageUri": image},
                ],
                "resources": {
                    "regions": ["us-central1"],
                    "virtualMachine": {
                        "machineType": "n1-standard-1",
                        "preemptible": False,
                        "bootDiskSizeGb": 10,
                        "serviceAccount": {"email": "default"},
                        "network": {"network": "default"},
                    },
                },
            },
        },
    }
    if done:
        operation["metadata"]["endTime"] = (created + timedelta(minutes=5)).isoformat().replace("+00:00", "Z")
    if error_code is not None:
        operation["error"] = {"code": error_code, "message": "Execution failed: exit status 1"}
    return operation


def v1_operation(
    job_id: str,
    *,
    number: int = 1,
    created: datetime = T0,
    done: bool = False,
    error_code: int | None = None,
    events: list[str] | None = None,
    labels: dict[str, str] | None = None,
    compute: dict[str, str] | None = None,
) -> dict[str, Any]:
    """A v1-style operation with canonical event descriptions."""
    operation: dict[str, Any] = {
        "name": f"operations/op-{number}",
        "done": done,
        "metadata": {
            "projectId": "my-project",
            "createTime": created.isoformat().replace("+00:00", "Z"),
            "labels": {"job-id": job_id, "job-name": job_id, "user-id": "alice", **(labels or {})},
            "events": [
                {"description": description, "startTime": (created + timedelta(seconds=i)).isoformat()}
                for i, description in enumerate(events or [])
            ],
            "runtimeMetadata": {"computeEngine": compute or {}},
        },
    }
    if error_code is not None:
        operation["error"] = {"code": error_code, "message": "pipeline failed"}
    return operation

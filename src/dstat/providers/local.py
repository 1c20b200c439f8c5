"""Local provider: reads the job tree written by the local runner.

On-disk layout::

    <root>/
    └── <job-id>/
        ├── meta.yaml                 (optional job-level metadata)
        └── task/
            └── <task-id | "task">/
                ├── meta.yaml         job-id, job-name, user-id, create-time,
                │                     labels, task-id, task-attempt
                ├── events.txt        "<name>,<timestamp>" per line, append-only
                ├── status.txt        RUNNING | SUCCESS | FAILURE | CANCELED
                ├── end-time.txt      (terminal tasks)
                └── status-message.txt

Only job ids are looked up natively (one directory per id). Every other
criterion is left to the Filter Engine. Blocking file I/O runs in a worker
thread so several providers can be queried concurrently.

Example:
    >>> provider = LocalProvider("/tmp/dsub-local")
    >>> records = await provider.list_jobs(JobFilter.build(job_ids=["job-a"]))
    >>> records[0].tasks[0].provider_attributes["task-dir"]
    '/tmp/dsub-local/job-a/task/task'

Tags:
    dstat, providers, local, filesystem

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from dstat.core.errors import BackendUnavailable
from dstat.core.logging import get_logger
from dstat.core.timestamps import parse_timestamp
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
from dstat.providers.events import ensure_terminal_event, identity_mapper, normalize_timeline

logger = get_logger(__name__)

SINGLE_TASK_DIR = "task"


class LocalProvider(BaseProviderAdapter):
    """Provider for jobs run by the local runner."""

    def __init__(self, root: str | os.PathLike[str], *, retry: RetryStrategy | None = None) -> None:
        super().__init__(retry=retry)
        self.root = Path(root)

    @property
    def provider_name(self) -> str:
        return "local"

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(filter_job_ids=True)

    async def _do_list_jobs(self, criteria: JobFilter) -> list[JobRecord]:
        return await asyncio.to_thread(self._scan, criteria.job_ids)

    async def _do_health(self) -> ProviderHealth:
        exists = await asyncio.to_thread(self.root.is_dir)
        message = None if exists else f"{self.root} does not exist yet (no local jobs)"
        return ProviderHealth(healthy=True, provider=self.provider_name, message=message)

    # ── Scanning (worker thread) ─────────────────────────────────

    def _scan(self, job_ids: frozenset[str] | None) -> list[JobRecord]:
        try:
            if not self.root.is_dir():
                return []
            if job_ids is not None:
                job_dirs = [self.root / job_id for job_id in sorted(job_ids) if self._is_job_dir_name(job_id)]
            else:
                job_dirs = sorted(p for p in self.root.iterdir() if p.is_dir())
            records = []
            for job_dir in job_dirs:
                record = self._read_job(job_dir)
                if record is not None:
                    records.append(record)
            return records
        except OSError as exc:
            raise BackendUnavailable(
                f"Cannot read local job tree {self.root}: {exc}", cause=exc
            ) from exc

    def _is_job_dir_name(self, job_id: str) -> bool:
        # Ids name a directory directly under the root, never a path.
        if job_id in ("", ".", "..") or Path(job_id).name != job_id:
            logger.warning("local_job_id_rejected", job_id=job_id, root=str(self.root))
            return False
        return True

    def _read_job(self, job_dir: Path) -> JobRecord | None:
        if not job_dir.is_dir():
            return None
        task_root = job_dir / "task"
        task_dirs = sorted(p for p in task_root.iterdir() if p.is_dir()) if task_root.is_dir() else []

        job_meta, job_meta_error = _load_yaml(job_dir / "meta.yaml")
        if not task_dirs and not (job_dir / "meta.yaml").exists():
            return None

        tasks: list[TaskRecord] = []
        metas: list[dict[str, Any]] = []
        for task_dir in task_dirs:
            meta, error = _load_yaml(task_dir / "meta.yaml")
            merged, problem = _checked_meta({**job_meta, **meta}, task_dir)
            metas.append(merged)
            tasks.append(self._read_task(task_dir, merged, error or job_meta_error or problem))

        meta = metas[0] if metas else _checked_meta(job_meta, job_dir)[0]
        job_id = str(meta.get("job-id") or job_dir.name)
        try:
            create_time = parse_timestamp(meta["create-time"])
        except (KeyError, TypeError, ValueError):
            create_time = datetime.fromtimestamp(job_dir.stat().st_mtime, UTC)
            logger.debug("local_create_time_from_mtime", job_id=job_id)

        return JobRecord(
            job_id=job_id,
            job_name=str(meta.get("job-name") or job_id),
            create_time=create_time,
            provider=self.provider_name,
            labels={str(k): str(v) for k, v in (meta.get("labels") or {}).items()},
            user_id=meta.get("user-id"),
            tasks=tuple(tasks),
        )

    def _read_task(self, task_dir: Path, meta: dict[str, Any], meta_error: str | None) -> TaskRecord:
        job_id = str(meta.get("job-id") or task_dir.parent.parent.name)
        task_id = meta.get("task-id")
        if task_id is None and task_dir.name != SINGLE_TASK_DIR:
            task_id = task_dir.name
        task_id = str(task_id) if task_id is not None else None

        lines = _read_lines(task_dir / "events.txt")
        raw_events = [_event_from_line(line) for line in lines]
        events, degraded = normalize_timeline(
            raw_events,
            identity_mapper,
            provider=self.provider_name,
            job_id=job_id,
            task_id=task_id,
        )

        status_text = _read_text(task_dir / "status.txt")
        end_time_text = _read_text(task_dir / "end-time.txt")
        status_message = _read_text(task_dir / "status-message.txt")

        if status_text and degraded is None:
            try:
                status = TaskStatus(status_text.upper())
            except ValueError:
                degraded = f"Unrecognized status {status_text!r} in {task_dir / 'status.txt'}"
                logger.warning("local_status_unrecognized", job_id=job_id, task_id=task_id, status=status_text)
            else:
                end_time = _end_time(task_dir, end_time_text)
                events = ensure_terminal_event(events, status, end_time, message=status_message)

        attempt = meta.get("task-attempt")
        return TaskRecord(
            task_id=task_id,
            task_attempt=int(attempt) if attempt is not None else None,
            events=events,
            provider_attributes={"task-dir": str(task_dir)},
            status_message=status_message,
            raw={
                "meta": meta,
                "events": lines,
                "status": status_text,
                "end-time": end_time_text,
                "status-message": status_message,
            },
            degraded=degraded or meta_error,
        )


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def _read_text(path: Path) -> str | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return text or None


def _read_lines(path: Path) -> list[str]:
    text = _read_text(path)
    if not text:
        return []
    return [line.strip() for line in text.splitlines() if line.strip()]


def _load_yaml(path: Path) -> tuple[dict[str, Any], str | None]:
    """Load a metadata file; a malformed one degrades instead of raising."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}, None
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        logger.warning("local_meta_unreadable", path=str(path), error=str(exc))
        return {}, f"Malformed {path.name}: {exc}"
    if not isinstance(data, dict):
        return {}, f"Malformed {path.name}: expected a mapping"
    return data, None


def _checked_meta(meta: dict[str, Any], where: Path) -> tuple[dict[str, Any], str | None]:
    """Blank out fields with the wrong type and describe what was wrong."""
    meta = dict(meta)
    problems = []
    labels = meta.get("labels")
    if labels is not None and not isinstance(labels, dict):
        problems.append(f"labels must be a mapping, got {labels!r}")
        meta["labels"] = {}
    attempt = meta.get("task-attempt")
    if attempt is not None and not _is_attempt(attempt):
        problems.append(f"task-attempt must be a whole number, got {attempt!r}")
        meta["task-attempt"] = None
    if not problems:
        return meta, None
    logger.warning("local_meta_malformed", path=str(where), problems=problems)
    return meta, "Malformed meta.yaml: " + "; ".join(problems)


def _is_attempt(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value >= 0
    return isinstance(value, str) and value.isdigit()


def _event_from_line(line: str) -> dict[str, Any]:
    name, sep, timestamp = line.partition(",")
    return {"description": name.strip(), "timestamp": timestamp.strip() if sep else None}


def _end_time(task_dir: Path, text: str | None) -> datetime | None:
    if text:
        try:
            return parse_timestamp(text)
        except ValueError:
            logger.warning("local_end_time_unparseable", task_dir=str(task_dir), value=text)
    try:
        return datetime.fromtimestamp((task_dir / "status.txt").stat().st_mtime, UTC)
    except FileNotFoundError:
        return None


__all__ = ["LocalProvider"]

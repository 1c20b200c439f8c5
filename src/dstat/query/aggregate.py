"""Aggregator / Sorter: merges task-level records and orders results.

Cloud providers return one record per task (one backend operation each);
``merge_records`` folds records of the same ``(provider, job_id)`` into a
single job. Job status is derived from the merged tasks:

    .. code-block:: text

        (latest attempt of each task only)
        no tasks                 → PENDING
        any task FAILURE         → FAILURE
        every task SUCCESS       → SUCCESS
        otherwise                → least-advanced task status
                                   UNKNOWN < PENDING < RUNNING < CANCELED

``sort_records`` orders by ``create_time`` descending, ties broken by
``job_id`` ascending, so output is stable across identical queries.

Example:
    >>> merged = merge_records([task_0_record, task_1_record])
    >>> [t.task_id for t in merged[0].tasks]
    ['0', '1']
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable

from dstat.providers._types import JobRecord, TaskRecord, TaskStatus, derive_job_status, latest_attempts


def job_status(tasks: Iterable[TaskRecord]) -> TaskStatus:
    """Aggregate status of a set of tasks; only the latest attempt of each counts."""
    return derive_job_status(task.status for task in latest_attempts(tasks))


def _task_order(task: TaskRecord) -> tuple[int, int, str, int]:
    task_id = task.task_id
    attempt = task.task_attempt or 0
    if task_id is None:
        return (0, 0, "", attempt)
    if task_id.isdigit():
        return (1, int(task_id), "", attempt)
    return (2, 0, task_id, attempt)


def merge_tasks(tasks: Iterable[TaskRecord]) -> tuple[TaskRecord, ...]:
    """Deduplicate by ``(task_id, task_attempt)`` and order by task id.

    Of two snapshots of the same task the one with more events wins, since
    timelines only grow.
    """
    best: dict[tuple[str | None, int | None], TaskRecord] = {}
    for task in tasks:
        current = best.get(task.dedup_key)
        if current is None or len(task.events) > len(current.events):
            best[task.dedup_key] = task
    return tuple(sorted(best.values(), key=_task_order))


def merge_records(records: Iterable[JobRecord]) -> list[JobRecord]:
    """Fold records of the same ``(provider, job_id)`` into one job each.

    Job-level fields come from the first record seen; ``create_time`` is the
    earliest of the group and ``user_id`` the first one reported.
    """
    groups: dict[tuple[str, str], list[JobRecord]] = {}
    for record in records:
        groups.setdefault(record.key, []).append(record)

    merged = []
    for group in groups.values():
        first = group[0]
        if len(group) == 1:
            tasks = merge_tasks(first.tasks)
            merged.append(first if tasks == first.tasks else dataclasses.replace(first, tasks=tasks))
            continue
        merged.append(
            dataclasses.replace(
                first,
                create_time=min(r.create_time for r in group),
                user_id=next((r.user_id for r in group if r.user_id), None),
                tasks=merge_tasks(t for r in group for t in r.tasks),
            )
        )
    return merged


def sort_records(records: Iterable[JobRecord], limit: int | None = None) -> list[JobRecord]:
    """Newest first, ties by job id; optionally truncated to ``limit``."""
    # Two stable passes: secondary key ascending, then primary descending.
    ordered = sorted(records, key=lambda r: r.job_id)
    ordered.sort(key=lambda r: r.create_time, reverse=True)
    if limit is not None and limit > 0:
        return ordered[:limit]
    return ordered


__all__ = ["job_status", "merge_records", "merge_tasks", "sort_records"]

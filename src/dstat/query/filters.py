"""Filter Engine: applies a ``JobFilter`` to job records.

Providers push down what their backend supports; this module re-applies
the *full* criteria to every record regardless, so an unsupported
criterion is never silently dropped.

Predicates (all must hold):

    job_ids         job_id ∈ set
    job_names       job_name ∈ set
    user_ids        user_id ∈ set
    labels          every (key, value) pair present on the job
    statuses        derived job status ∈ set   (None / "*" → any)
    created_after   create_time >= bound       (inclusive)
    created_before  create_time <  bound       (exclusive)
    task_ids        tasks trimmed to the set; jobs left with none dropped

Example:
    >>> criteria = JobFilter.build(statuses=["RUNNING"], labels=["team=genomics"])
    >>> [r.job_id for r in apply_filter(records, criteria)]
    ['job-b']
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable

from dstat.providers._types import JobFilter, JobRecord


def dedupe(records: Iterable[JobRecord]) -> list[JobRecord]:
    """Keep the first record per ``(provider, job_id)``, preserving order."""
    seen: set[tuple[str, str]] = set()
    unique = []
    for record in records:
        if record.key not in seen:
            seen.add(record.key)
            unique.append(record)
    return unique


def trim_tasks(record: JobRecord, task_ids: frozenset[str] | None) -> JobRecord | None:
    """Restrict a job to the requested tasks; None when nothing is left."""
    if task_ids is None:
        return record
    tasks = tuple(t for t in record.tasks if t.task_id is not None and t.task_id in task_ids)
    if not tasks:
        return None
    if len(tasks) == len(record.tasks):
        return record
    return dataclasses.replace(record, tasks=tasks)


def matches(record: JobRecord, criteria: JobFilter) -> bool:
    """Whether one (already task-trimmed) record satisfies the criteria."""
    if criteria.job_ids is not None and record.job_id not in criteria.job_ids:
        return False
    if criteria.job_names is not None and record.job_name not in criteria.job_names:
        return False
    if criteria.user_ids is not None and record.user_id not in criteria.user_ids:
        return False
    for key, value in criteria.labels:
        if record.labels.get(key) != value:
            return False
    if criteria.created_after is not None and record.create_time < criteria.created_after:
        return False
    if criteria.created_before is not None and record.create_time >= criteria.created_before:
        return False
    if criteria.statuses is not None and record.status not in criteria.statuses:
        return False
    return True


def apply_filter(records: Iterable[JobRecord], criteria: JobFilter) -> list[JobRecord]:
    """Deduplicate, trim tasks and keep matching records, in input order."""
    result = []
    for record in dedupe(records):
        trimmed = trim_tasks(record, criteria.task_ids)
        if trimmed is not None and matches(trimmed, criteria):
            result.append(trimmed)
    return result


__all__ = ["apply_filter", "dedupe", "matches", "trim_tasks"]

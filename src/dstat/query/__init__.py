"""Query pipeline: fan-out, merge, filter, sort."""

from dstat.query.aggregate import job_status, merge_records, merge_tasks, sort_records
from dstat.query.engine import ProviderFailure, ProviderOutcome, QueryResult, StatusEngine
from dstat.query.filters import apply_filter, dedupe, matches, trim_tasks

__all__ = [
    "ProviderFailure",
    "ProviderOutcome",
    "QueryResult",
    "StatusEngine",
    "apply_filter",
    "dedupe",
    "job_status",
    "matches",
    "merge_records",
    "merge_tasks",
    "sort_records",
    "trim_tasks",
]

"""Tests for the record model, status derivation and JobFilter validation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from dstat.core.errors import InvalidCriteria
from dstat.providers._types import (
    Event,
    JobFilter,
    JobRecord,
    TaskRecord,
    TaskStatus,
    derive_job_status,
    derive_task_status,
    latest_attempts,
    parse_label,
)
from tests._support import T0, make_events, make_job, make_task, ts


# ── Task status ──────────────────────────────────────────────────────────


class TestDeriveTaskStatus:
    def test_no_events_is_pending(self):
        assert derive_task_status(()) is TaskStatus.PENDING

    def test_events_without_terminal_is_running(self):
        assert derive_task_status(make_events("start", "running-docker")) is TaskStatus.RUNNING

    @pytest.mark.parametrize(
        "terminal, expected",
        [("ok", TaskStatus.SUCCESS), ("fail", TaskStatus.FAILURE), ("canceled", TaskStatus.CANCELED)],
    )
    def test_terminal_event_decides(self, terminal, expected):
        assert derive_task_status(make_events("start", terminal)) is expected

    def test_pass_through_events_do_not_terminate(self):
        events = make_events("start") + (Event("ok", ts(5), canonical=False),)
        assert derive_task_status(events) is TaskStatus.RUNNING

    def test_degraded_is_unknown(self):
        assert derive_task_status(make_events("start", "ok"), degraded=True) is TaskStatus.UNKNOWN

    def test_task_record_status_property(self):
        assert make_task("SUCCESS").status is TaskStatus.SUCCESS
        assert make_task("SUCCESS", degraded="bad event").status is TaskStatus.UNKNOWN


# ── Job status ───────────────────────────────────────────────────────────


class TestDeriveJobStatus:
    def test_no_tasks_is_pending(self):
        assert derive_job_status([]) is TaskStatus.PENDING

    def test_any_failure_wins(self):
        assert derive_job_status([TaskStatus.SUCCESS, TaskStatus.FAILURE, TaskStatus.RUNNING]) is TaskStatus.FAILURE

    def test_all_success(self):
        assert derive_job_status([TaskStatus.SUCCESS, TaskStatus.SUCCESS]) is TaskStatus.SUCCESS

    def test_least_advanced_otherwise(self):
        assert derive_job_status([TaskStatus.SUCCESS, TaskStatus.RUNNING]) is TaskStatus.RUNNING
        assert derive_job_status([TaskStatus.RUNNING, TaskStatus.PENDING]) is TaskStatus.PENDING
        assert derive_job_status([TaskStatus.CANCELED, TaskStatus.SUCCESS]) is TaskStatus.CANCELED
        assert derive_job_status([TaskStatus.UNKNOWN, TaskStatus.RUNNING]) is TaskStatus.UNKNOWN

    def test_job_record_status_property(self):
        job = make_job("j", tasks=(make_task("SUCCESS", task_id="0"), make_task("RUNNING", task_id="1")))
        assert job.status is TaskStatus.RUNNING

    def test_latest_attempt_per_task_decides(self):
        failed = make_task("FAILURE", task_id="0", attempt=1)
        retried = make_task("SUCCESS", task_id="0", attempt=2)
        other = make_task("SUCCESS", task_id="1")
        job = make_job("j", tasks=(failed, other, retried))
        assert latest_attempts(job.tasks) == (retried, other)
        assert job.current_tasks == (retried, other)
        assert job.status is TaskStatus.SUCCESS

    def test_tasks_without_attempts_are_not_collapsed(self):
        tasks = (make_task("SUCCESS"), make_task("FAILURE"))
        assert latest_attempts(tasks) == tasks

    def test_zero_task_job(self):
        job = JobRecord(job_id="j", job_name="j", create_time=T0, provider="stub")
        assert job.status is TaskStatus.PENDING
        assert job.last_update == T0


class TestRecords:
    def test_last_update_is_latest_event(self):
        job = make_job("j", tasks=(make_task("SUCCESS", task_id="0"), make_task("RUNNING", task_id="1", start=100)))
        assert job.last_update == ts(103)

    def test_canonical_events_skip_pass_through(self):
        task = TaskRecord(events=make_events("start") + (Event("Started pulling", ts(9), canonical=False),))
        assert [e.name for e in task.canonical_events] == ["start"]

    def test_event_to_dict(self):
        event = Event("start", T0, True, 'Worker "w" assigned in "us-east1-b"', {"zone": "us-east1-b"})
        assert event.to_dict() == {"name": "start", "timestamp": "2024-05-01T12:00:00+00:00"}
        assert event.to_dict(full=True)["detail"] == {"zone": "us-east1-b"}


# ── JobFilter ────────────────────────────────────────────────────────────


class TestJobFilterBuild:
    def test_empty_is_unrestricted(self):
        assert JobFilter.build().is_unrestricted

    def test_repeated_ids_collapse(self):
        criteria = JobFilter.build(job_ids=["job-c", "job-c", "job-b"])
        assert criteria.job_ids == frozenset({"job-b", "job-c"})

    def test_statuses_are_case_insensitive(self):
        criteria = JobFilter.build(statuses=["running", "SUCCESS"])
        assert criteria.statuses == frozenset({TaskStatus.RUNNING, TaskStatus.SUCCESS})

    def test_wildcard_status_means_any(self):
        assert JobFilter.build(statuses=["*"]).statuses is None
        assert JobFilter.build(statuses=["RUNNING", "*"]).statuses is None

    def test_unknown_status(self):
        with pytest.raises(InvalidCriteria, match="Unknown status"):
            JobFilter.build(statuses=["DONE"])

    def test_labels(self):
        criteria = JobFilter.build(labels=["test-token=abc123", "team=genomics"])
        assert criteria.labels == frozenset({("test-token", "abc123"), ("team", "genomics")})

    def test_label_with_empty_value(self):
        assert JobFilter.build(labels=["flag="]).labels == frozenset({("flag", "")})

    def test_conflicting_label_values(self):
        with pytest.raises(InvalidCriteria, match="conflicting"):
            JobFilter.build(labels=["team=a", "team=b"])

    def test_age_sets_created_after(self):
        criteria = JobFilter.build(age="5s", now=T0)
        assert criteria.created_after == T0 - timedelta(seconds=5)

    def test_bad_age(self):
        with pytest.raises(InvalidCriteria, match="Unable to parse age"):
            JobFilter.build(age="five seconds")

    def test_empty_time_window(self):
        with pytest.raises(InvalidCriteria, match="Empty time window"):
            JobFilter.build(created_after=ts(10), created_before=ts(0))

    def test_empty_identifier(self):
        with pytest.raises(InvalidCriteria):
            JobFilter.build(job_ids=["job-a", " "])

    def test_for_job_ids(self):
        criteria = JobFilter.for_job_ids(["a", "b"])
        assert criteria.job_ids == frozenset({"a", "b"})
        assert criteria.statuses is None

    def test_to_dict(self):
        criteria = JobFilter.build(job_ids=["b", "a"], statuses=["RUNNING"], labels=["k=v"])
        assert criteria.to_dict() == {"job_ids": ["a", "b"], "labels": ["k=v"], "statuses": ["RUNNING"]}


class TestParseLabel:
    @pytest.mark.parametrize("text", ["novalue", "=value", "Upper=x", "1abc=x", "key=UPPER", "key=sp ace"])
    def test_invalid(self, text):
        with pytest.raises(InvalidCriteria):
            parse_label(text)

    def test_too_long(self):
        with pytest.raises(InvalidCriteria):
            parse_label("k=" + "a" * 64)

    def test_valid(self):
        assert parse_label("dsub-version=v0-4-1") == ("dsub-version", "v0-4-1")

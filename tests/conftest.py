"""
Shared pytest fixtures and configuration for dstat tests.

This module provides:
- Location-based markers (core, providers, query, cli)
- Environment isolation from DSTAT_* variables
- The A/B/C job scenario used across query and CLI tests

Usage:
    Fixtures are auto-discovered by pytest; builders live in
    ``tests._support``.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import structlog

from dstat.providers._base import StubProvider
from dstat.providers._types import JobRecord
from dstat.providers.router import ProviderRouter
from tests._support import make_job

_AREAS = ("core", "providers", "query", "cli")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        parts = Path(str(item.fspath)).relative_to(Path(__file__).parent).parts
        if parts and parts[0] in _AREAS:
            item.add_marker(getattr(pytest.mark, parts[0]))


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's DSTAT_* settings and .env out of tests."""
    for key in list(os.environ):
        if key.startswith("DSTAT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Scenario fixtures
# =============================================================================


@pytest.fixture
def scenario_jobs() -> list[JobRecord]:
    """completed-job (SUCCESS), running-job and running-job-2, submitted in that order."""
    labels = {"test-token": "abc123"}
    return [
        make_job("job-a", name="completed-job", created=0, status="SUCCESS", labels=labels),
        make_job("job-b", name="running-job", created=10, status="RUNNING", labels=labels),
        make_job("job-c", name="running-job-2", created=20, status="RUNNING", labels=labels),
    ]


@pytest.fixture
def stub_router(scenario_jobs: list[JobRecord]) -> ProviderRouter:
    router = ProviderRouter()
    router.register(StubProvider(scenario_jobs, name="local"))
    return router

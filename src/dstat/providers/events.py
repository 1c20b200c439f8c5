"""Event Timeline Normalizer.

Maps provider-native events onto the canonical lifecycle vocabulary while
preserving emission order.

Canonical vocabulary (lifecycle order)::

    start → pulling-image → localizing-files → running-docker
          → delocalizing-files → ok | fail | canceled

Rules:
    - Each provider supplies an ``EventMapper``: native description →
      canonical name, or None when it has no canonical meaning.
    - Unmapped events pass through verbatim with ``canonical=False``.
    - A repeated canonical name is kept, demoted to ``canonical=False``.
    - A non-empty timeline always starts with ``start``; when the backend
      omitted it, one is inserted at the first event's time.
    - Malformed entries raise ``NormalizationError`` with the events
      normalized so far; ``normalize_timeline`` turns that into a degraded
      task instead of failing the query.

Example:
    >>> mapper = V2EventMapper(user_image="ubuntu:22.04", succeeded=True)
    >>> events = normalize_events(
    ...     [
    ...         {"description": 'Worker "w-1" assigned in "us-central1-f"',
    ...          "timestamp": "2024-01-01T00:00:01Z"},
    ...         {"description": "Worker released", "timestamp": "2024-01-01T00:05:00Z"},
    ...     ],
    ...     mapper,
    ... )
    >>> [e.name for e in events]
    ['start', 'ok']

Tags:
    events, normalization, timeline, status, dstat

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from dstat.core.errors import NormalizationError
from dstat.core.logging import get_logger
from dstat.core.timestamps import parse_timestamp
from dstat.providers._types import (
    CANCELED,
    CANONICAL_EVENTS,
    DELOCALIZING_FILES,
    FAIL,
    LOCALIZING_FILES,
    OK,
    PULLING_IMAGE,
    RUNNING_DOCKER,
    START,
    STATUS_TERMINAL_EVENT,
    Event,
    TaskStatus,
    derive_task_status,
)

logger = get_logger(__name__)

EventMapper = Callable[[str], str | None]


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------

def identity_mapper(description: str) -> str | None:
    """Mapper for backends that already emit canonical names (v1, local)."""
    name = description.strip()
    return name if name in CANONICAL_EVENTS else None


_WORKER_ASSIGNED = re.compile(r'^Worker "(?P<instance>[^"]*)" assigned in "(?P<zone>[^"]*)"')
_STARTED_PULLING = re.compile(r'^Started pulling "(?P<image>[^"]*)"')
_STARTED_RUNNING = re.compile(r'^Started running "(?P<action>[^"]*)"')
_WORKER_RELEASED = re.compile(r"^Worker released")
_FAILED = re.compile(r"^(Execution failed|Unexpected exit status)")
_CANCELED = re.compile(r"^(The )?operation (was )?cancel+ed", re.IGNORECASE)

_ACTION_EVENTS: dict[str, str] = {
    "localization": LOCALIZING_FILES,
    "user-command": RUNNING_DOCKER,
    "delocalization": DELOCALIZING_FILES,
}


class V2EventMapper:
    """Regex mapper for Pipelines v2-style operation events.

    .. code-block:: text

        Worker "<vm>" assigned in "<zone>"     → start
        Started pulling "<user image>"         → pulling-image
        Started running "localization"         → localizing-files
        Started running "user-command"         → running-docker
        Started running "delocalization"       → delocalizing-files
        Worker released                        → ok   (successful ops only)
        Execution failed / Unexpected exit ... → fail
        Operation canceled                     → canceled

    Args:
        user_image: The job's own image. Pulls of other images (helper
            containers) pass through. None maps every pull.
        succeeded: Whether the operation finished without error.
    """

    def __init__(self, *, user_image: str | None = None, succeeded: bool = False):
        self.user_image = user_image
        self.succeeded = succeeded

    def __call__(self, description: str) -> str | None:
        if _WORKER_ASSIGNED.match(description):
            return START
        match = _STARTED_PULLING.match(description)
        if match:
            if self.user_image is None or match.group("image") == self.user_image:
                return PULLING_IMAGE
            return None
        match = _STARTED_RUNNING.match(description)
        if match:
            return _ACTION_EVENTS.get(match.group("action"))
        if _WORKER_RELEASED.match(description):
            return OK if self.succeeded else None
        if _FAILED.match(description):
            return FAIL
        if _CANCELED.match(description):
            return CANCELED
        return None


def worker_assignment(description: Any) -> dict[str, str]:
    """Extract ``zone`` and ``instance-name`` from a worker-assigned event."""
    if not isinstance(description, str):
        return {}
    match = _WORKER_ASSIGNED.match(description)
    if not match:
        return {}
    return {"zone": match.group("zone"), "instance-name": match.group("instance")}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_events(
    raw_events: Iterable[Mapping[str, Any]],
    mapper: EventMapper,
) -> tuple[Event, ...]:
    """Normalize native events, in emission order.

    Each raw event is a mapping with ``description`` (or ``name``),
    ``timestamp`` and optional ``details``.

    Raises:
        NormalizationError: On a missing description, a bad timestamp or
            non-mapping details; the error's ``partial`` holds the events
            normalized before it.
    """
    events: list[Event] = []
    seen: set[str] = set()

    for index, raw in enumerate(raw_events):
        if not isinstance(raw, Mapping):
            raise NormalizationError(
                f"Event #{index} is not a mapping: {raw!r}",
                partial=_with_start(events),
            )
        description = raw.get("description") or raw.get("name")
        if not isinstance(description, str) or not description.strip():
            raise NormalizationError(
                f"Event #{index} has no description",
                partial=_with_start(events),
            )
        try:
            timestamp = parse_timestamp(raw.get("timestamp"))
        except (TypeError, ValueError) as exc:
            raise NormalizationError(
                f"Event #{index} ({description!r}) has an unparseable timestamp: {exc}",
                partial=_with_start(events),
                cause=exc,
            ) from exc

        details = raw.get("details") or {}
        if not isinstance(details, Mapping):
            raise NormalizationError(
                f"Event #{index} ({description!r}) has details that are not a mapping: {details!r}",
                partial=_with_start(events),
            )
        detail = dict(details)
        name = mapper(description)
        if name is not None and name not in seen:
            seen.add(name)
            events.append(Event(name, timestamp, True, description, detail))
        else:
            events.append(Event(description, timestamp, False, description, detail))

    return _with_start(events)


def _with_start(events: list[Event]) -> tuple[Event, ...]:
    if not events or (events[0].canonical and events[0].name == START):
        return tuple(events)
    first = events[0].timestamp
    # A later canonical start becomes a duplicate once one leads the timeline.
    rest = [
        Event(e.name, e.timestamp, False, e.description, e.detail)
        if e.canonical and e.name == START
        else e
        for e in events
    ]
    return (Event(START, first, True),) + tuple(rest)


def ensure_terminal_event(
    events: tuple[Event, ...],
    status: TaskStatus,
    end_time: datetime | None,
    *,
    message: str | None = None,
) -> tuple[Event, ...]:
    """Append the terminal event a backend reported only through its status.

    Timelines that already end in the matching status are returned as is.
    """
    name = STATUS_TERMINAL_EVENT.get(status)
    if name is None or derive_task_status(events) is status:
        return events
    when = end_time or (events[-1].timestamp if events else None)
    if when is None:
        return events
    if not events:
        events = (Event(START, when, True),)
    if any(e.canonical and e.name == name for e in events):
        return events
    return events + (Event(name, when, True, message),)


def normalize_timeline(
    raw_events: Iterable[Mapping[str, Any]],
    mapper: EventMapper,
    *,
    provider: str,
    job_id: str,
    task_id: str | None = None,
) -> tuple[tuple[Event, ...], str | None]:
    """Normalize one task's events, degrading instead of raising.

    Returns:
        ``(events, degraded)``: ``degraded`` is the normalization error
        message when the timeline is only partial, else None.
    """
    try:
        return normalize_events(raw_events, mapper), None
    except NormalizationError as exc:
        exc.with_context(provider=provider, job_id=job_id, task_id=task_id)
        logger.warning("task_events_degraded", **exc.to_dict())
        return tuple(exc.partial), exc.message


__all__ = [
    "EventMapper",
    "V2EventMapper",
    "derive_task_status",
    "ensure_terminal_event",
    "identity_mapper",
    "normalize_events",
    "normalize_timeline",
    "worker_assignment",
]

"""
Timestamp utilities for provider data and age filters.

Backends report times in several shapes: RFC 3339 strings with up to
nanosecond precision (cloud operations), ``YYYY-MM-DD HH:MM:SS.ffffff``
strings (local provider files), epoch seconds.  Everything the engine
compares is a timezone-aware UTC ``datetime``.

Features:
    - **utc_now():** Timezone-aware UTC datetime
    - **parse_timestamp():** Any provider timestamp → aware UTC datetime
    - **to_iso8601():** Stable rendering for YAML/JSON output
    - **age_to_create_time():** ``"5s"``, ``"3m"``, ``"1h"``, ``"2d"``,
      ``"1w"`` or bare epoch seconds → lower bound on create time

Tags:
    timestamps, utc, datetime, age, dstat

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

_FRACTION = re.compile(r"\.(\d+)")

_AGE_UNITS: dict[str, str] = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def parse_timestamp(value: str | int | float | datetime) -> datetime:
    """Parse a provider timestamp into an aware UTC datetime.

    Naive values are interpreted as local time, which is how the local
    runner writes them.

    Raises:
        ValueError: If the value cannot be interpreted.

    Example:
        >>> parse_timestamp("2017-10-16T21:57:10.463487123Z")
        datetime.datetime(2017, 10, 16, 21, 57, 10, 463487, tzinfo=datetime.timezone.utc)
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, UTC)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp")
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        # fromisoformat stops at microseconds
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed.astimezone(UTC)


def to_iso8601(value: datetime | None) -> str | None:
    """Render an aware datetime as ISO 8601 in UTC, or None."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()


def age_to_create_time(age: str | None, from_time: datetime | None = None) -> datetime | None:
    """Convert an age string into the oldest create time to keep.

    ``"5s"`` means "created within the last five seconds". A bare integer is
    an absolute epoch-seconds timestamp.

    Raises:
        ValueError: If the string cannot be parsed.

    Example:
        >>> now = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        >>> age_to_create_time("1h", now)
        datetime.datetime(2024, 1, 1, 11, 0, tzinfo=datetime.timezone.utc)
    """
    if not age:
        return None
    from_time = from_time or utc_now()
    text = age.strip()
    try:
        unit = _AGE_UNITS.get(text[-1])
        if unit:
            amount = int(text[:-1])
            if amount < 0:
                raise ValueError("age must not be negative")
            return from_time - timedelta(**{unit: amount})
        return datetime.fromtimestamp(int(text), UTC)
    except (ValueError, OverflowError, OSError, IndexError) as e:
        raise ValueError(f"Unable to parse age string {age!r}: {e}") from e


__all__ = ["age_to_create_time", "parse_timestamp", "to_iso8601", "utc_now"]

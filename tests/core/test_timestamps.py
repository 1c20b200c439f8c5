"""Tests for timestamp parsing and age strings."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from dstat.core.timestamps import age_to_create_time, parse_timestamp, to_iso8601, utc_now

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class TestParseTimestamp:
    def test_rfc3339_with_nanoseconds(self):
        parsed = parse_timestamp("2017-10-16T21:57:10.463487123Z")
        assert parsed == datetime(2017, 10, 16, 21, 57, 10, 463487, tzinfo=UTC)

    def test_short_fraction(self):
        assert parse_timestamp("2024-05-01T12:00:00.5Z").microsecond == 500000

    def test_offset_is_converted_to_utc(self):
        parsed = parse_timestamp("2024-05-01T14:00:00+02:00")
        assert parsed == NOW
        assert parsed.tzinfo is UTC

    def test_epoch_seconds(self):
        assert parse_timestamp(NOW.timestamp()) == NOW

    def test_aware_datetime(self):
        eastern = NOW.astimezone(timezone(timedelta(hours=-5)))
        assert parse_timestamp(eastern) == NOW

    def test_naive_is_local_time(self):
        naive = datetime(2024, 5, 1, 12, 0)
        assert parse_timestamp(naive) == naive.astimezone().astimezone(UTC)

    @pytest.mark.parametrize("value", ["", "   ", "yesterday", None, [1]])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)


class TestToIso8601:
    def test_none(self):
        assert to_iso8601(None) is None

    def test_utc(self):
        assert to_iso8601(NOW) == "2024-05-01T12:00:00+00:00"


class TestAgeToCreateTime:
    @pytest.mark.parametrize(
        "age, delta",
        [
            ("5s", timedelta(seconds=5)),
            ("3m", timedelta(minutes=3)),
            ("2h", timedelta(hours=2)),
            ("1d", timedelta(days=1)),
            ("1w", timedelta(weeks=1)),
        ],
    )
    def test_units(self, age, delta):
        assert age_to_create_time(age, NOW) == NOW - delta

    def test_bare_integer_is_epoch(self):
        assert age_to_create_time(str(int(NOW.timestamp())), NOW) == NOW

    def test_empty_means_no_bound(self):
        assert age_to_create_time(None) is None
        assert age_to_create_time("") is None

    def test_defaults_to_now(self):
        before = utc_now()
        bound = age_to_create_time("1h")
        assert before - timedelta(hours=1, seconds=5) <= bound <= utc_now() - timedelta(hours=1)

    @pytest.mark.parametrize("age", ["5x", "s", "abc", "-5s"])
    def test_invalid(self, age):
        with pytest.raises(ValueError, match="Unable to parse age string"):
            age_to_create_time(age, NOW)

"""Tests for time utilities."""

from datetime import datetime, timedelta, timezone

import pytest

from protocol_app.utils.time import (
    format_timestamp,
    minutes_to_iso_duration,
    parse_timestamp,
    time_elapsed_seconds,
    utc_now,
)


class TestTimestamps:
    """Test timestamp formatting and parsing."""

    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo is not None

    def test_round_trip(self):
        ts = datetime(2024, 3, 1, 7, 30, 15, 123456, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(ts)) == ts

    def test_naive_treated_as_utc(self):
        assert format_timestamp(datetime(2024, 3, 1, 7, 30)) == "2024-03-01T07:30:00+00:00"
        assert parse_timestamp("2024-03-01T07:30:00").tzinfo == timezone.utc

    def test_parse_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None


class TestDurations:
    """Test duration helpers."""

    def test_minutes_to_iso_duration(self):
        assert minutes_to_iso_duration(3) == "PT3M"
        assert minutes_to_iso_duration(90) == "PT90M"

    def test_non_positive_minutes_rejected(self):
        with pytest.raises(ValueError):
            minutes_to_iso_duration(0)

    def test_time_elapsed_seconds(self):
        start = datetime(2024, 3, 1, 7, 0, tzinfo=timezone.utc)
        assert time_elapsed_seconds(start, start + timedelta(minutes=14)) == 840.0

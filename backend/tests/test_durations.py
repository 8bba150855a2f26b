"""Tests for duration conversion and elapsed-time helpers."""
from datetime import datetime, timedelta, timezone

import pytest

from core.durations import (
    as_naive_utc,
    calculate_expiration,
    format_duration,
    from_milliseconds,
    has_elapsed,
    minutes_between,
    time_remaining,
    to_milliseconds,
    validate_duration,
)
from core.errors import ConfigurationError
from core.states import describe_state_value, get_state_color, get_state_label

START = datetime(2026, 3, 2, 8, 0, 0)


class TestConversion:

    @pytest.mark.parametrize("duration,unit,expected", [
        (30, "seconds", 30_000),
        (5, "minutes", 300_000),
        (2, "hours", 7_200_000),
        (5, "MINUTES", 300_000),
    ])
    def test_to_milliseconds(self, duration, unit, expected):
        assert to_milliseconds(duration, unit) == expected

    @pytest.mark.parametrize("duration", [None, 0, -5])
    def test_missing_or_negative_duration_is_zero(self, duration):
        assert to_milliseconds(duration, "minutes") == 0

    def test_unknown_unit_raises(self):
        with pytest.raises(ConfigurationError):
            to_milliseconds(5, "days")

    def test_from_milliseconds_floors(self):
        assert from_milliseconds(119_999, "minutes") == 1
        assert from_milliseconds(3_600_000, "hours") == 1

    def test_format_duration(self):
        assert format_duration(None, "minutes") == "Immediate"
        assert format_duration(1, "minutes") == "1 minute"
        assert format_duration(5, "minutes") == "5 minutes"
        assert format_duration(1, "hours") == "1 hour"


class TestValidation:

    def test_missing_duration_is_valid(self):
        validate_duration(None, None)

    @pytest.mark.parametrize("duration,unit", [
        (0, "minutes"),
        (-1, "minutes"),
        (1.5, "minutes"),
        (True, "minutes"),
        (5, None),
        (5, "weeks"),
    ])
    def test_invalid_combinations(self, duration, unit):
        with pytest.raises(ConfigurationError):
            validate_duration(duration, unit)

    def test_valid_combination(self):
        validate_duration(10, "seconds")


class TestElapsed:

    def test_expiration(self):
        assert calculate_expiration(5, "minutes", START) == START + timedelta(minutes=5)

    def test_has_elapsed_boundary(self):
        assert not has_elapsed(START, 5, "minutes", START + timedelta(minutes=4, seconds=59))
        assert has_elapsed(START, 5, "minutes", START + timedelta(minutes=5))

    def test_time_remaining_never_negative(self):
        assert time_remaining(START, 5, "minutes", START + timedelta(minutes=2)) == timedelta(minutes=3)
        assert time_remaining(START, 5, "minutes", START + timedelta(hours=1)) == timedelta(0)

    def test_minutes_between_is_fractional(self):
        assert minutes_between(START, START + timedelta(seconds=90)) == 1.5

    def test_as_naive_utc_converts_offsets(self):
        aware = datetime(2026, 3, 2, 10, 0, tzinfo=timezone(timedelta(hours=2)))

        assert as_naive_utc(aware) == datetime(2026, 3, 2, 8, 0)
        assert as_naive_utc(START) is START
        assert as_naive_utc(None) is None


class TestStateLabels:

    def test_known_codes(self):
        assert get_state_label(0) == "No batch"
        assert get_state_label(128) == "Operating"
        assert get_state_label(32768) == "Idle"

    def test_unknown_code(self):
        assert get_state_label(3) == "Unknown State (3)"

    def test_colors(self):
        assert get_state_color(1024) == "#FF0000"
        assert get_state_color(0) == "#CCCCCC"

    def test_describe_state_value(self):
        assert describe_state_value("128") == "Operating (128)"
        assert describe_state_value(None) == "N/A"
        assert describe_state_value("abc") == "abc"

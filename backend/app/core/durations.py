"""Duration helpers: unit conversion, elapsed checks and expiration math.

Durations are stored on rules as (amount, unit) pairs, unit being one of
seconds / minutes / hours. All datetimes are naive UTC.
"""
from __future__ import annotations

import enum
from datetime import datetime, timedelta, timezone

from core.errors import ConfigurationError


class DurationUnit(str, enum.Enum):
    seconds = "seconds"
    minutes = "minutes"
    hours = "hours"


_MS_PER_UNIT = {
    DurationUnit.seconds.value: 1000,
    DurationUnit.minutes.value: 60 * 1000,
    DurationUnit.hours.value: 60 * 60 * 1000,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _unit_key(unit) -> str:
    key = str(getattr(unit, "value", unit) or "").lower()
    if key not in _MS_PER_UNIT:
        raise ConfigurationError(
            f"Invalid duration unit: {unit!r}. Must be one of: "
            + ", ".join(_MS_PER_UNIT),
            unit=unit,
        )
    return key


def _ms_per_unit(unit) -> int:
    return _MS_PER_UNIT[_unit_key(unit)]


def to_milliseconds(duration: int | float | None, unit="minutes") -> int:
    if not duration or duration <= 0:
        return 0
    return int(duration * _ms_per_unit(unit))


def from_milliseconds(milliseconds: int, unit="minutes") -> int:
    return int(milliseconds // _ms_per_unit(unit))


def format_duration(duration: int | float | None, unit="minutes") -> str:
    if not duration or duration <= 0:
        return "Immediate"
    key = _unit_key(unit)
    label = key[:-1] if duration == 1 else key
    return f"{duration:g} {label}"


def validate_duration(duration, unit) -> None:
    """Raise ConfigurationError unless (duration, unit) is usable.

    A missing duration is valid: the requirement is optional.
    """
    if duration is None:
        return
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise ConfigurationError("Duration must be a positive integer", duration=duration)
    if not unit:
        raise ConfigurationError("Duration unit is required when duration is specified")
    _ms_per_unit(unit)


def calculate_expiration(duration, unit, start: datetime | None = None) -> datetime:
    start = start or utcnow()
    return start + timedelta(milliseconds=to_milliseconds(duration, unit))


def has_elapsed(start: datetime, duration, unit, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return now >= calculate_expiration(duration, unit, start)


def time_remaining(start: datetime, duration, unit, now: datetime | None = None) -> timedelta:
    now = now or utcnow()
    return max(calculate_expiration(duration, unit, start) - now, timedelta(0))


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0

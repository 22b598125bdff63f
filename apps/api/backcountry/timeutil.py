from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from typing import Any, Optional, Sequence

import pytz
from dateutil import parser as dtparse

DEFAULT_TRAVEL_WINDOW_HOURS = 12

_CLOCK_24H = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_CLOCK_12H = re.compile(r"^(\d{1,2}):([0-5]\d)(?::([0-5]\d))?\s*([AP]M)$", re.IGNORECASE)
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a datetime through) as an aware UTC datetime.

    Naive values are read as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = dtparse.isoparse(value.strip())
        except (ValueError, OverflowError):
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and _ISO_DATE.match(value.strip()):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def localize(naive_iso: str, tz: str | None) -> Optional[datetime]:
    """Attach a named zone to a provider's local wall-clock timestamp."""
    try:
        dt = dtparse.isoparse(naive_iso)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    try:
        zone = pytz.timezone(tz) if tz else pytz.UTC
    except pytz.UnknownTimeZoneError:
        zone = pytz.UTC
    return zone.localize(dt).astimezone(timezone.utc)


def local_hour(dt: datetime | None, tz: str | None) -> Optional[int]:
    if dt is None:
        return None
    try:
        zone = pytz.timezone(tz) if tz else pytz.UTC
    except pytz.UnknownTimeZoneError:
        zone = pytz.UTC
    return dt.astimezone(zone).hour


def hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0


def find_closest_time_index(times: Sequence[Any], target: datetime) -> int:
    """Index of the timestamp nearest to `target`; first one wins on ties, -1 if none parse."""
    best_idx = -1
    best_distance = float("inf")
    for i, t in enumerate(times):
        ts = parse_time(t)
        if ts is None:
            continue
        distance = abs((ts - target).total_seconds())
        if distance < best_distance:
            best_distance = distance
            best_idx = i
    return best_idx


def clamp_travel_window_hours(raw: Any, fallback: int = DEFAULT_TRAVEL_WINDOW_HOURS) -> int:
    try:
        numeric = float(raw)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(numeric):
        return fallback
    return max(1, min(24, int(round(numeric))))


def parse_clock_to_minutes(value: Any) -> Optional[int]:
    """Minutes after midnight for "06:30" or "6:30 AM" style clocks."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    m = _CLOCK_24H.match(text)
    if m:
        return int(m.group(1)) * 60 + int(m.group(2))
    m = _CLOCK_12H.match(text)
    if not m:
        return None
    hour = int(m.group(1))
    if hour < 1 or hour > 12:
        return None
    hour = hour % 12 + (12 if m.group(4).upper() == "PM" else 0)
    return hour * 60 + int(m.group(2))


def planned_start(
    selected_date: str | None,
    start_clock: str | None,
    tz: str | None = None,
    reference: datetime | None = None,
) -> Optional[datetime]:
    """Combine a YYYY-MM-DD date and HH:MM wall clock in `tz` into a UTC travel start."""
    day = parse_date(selected_date)
    minutes = parse_clock_to_minutes(start_clock)
    if day is None:
        return reference
    if minutes is None:
        minutes = 0 if reference is None else reference.hour * 60 + reference.minute
    wall = datetime(day.year, day.month, day.day, minutes // 60, minutes % 60).isoformat()
    return localize(wall, tz)

"""
Time rules: UTC normalisation, schedule parsing and timezone conversions.
Everything is stored in UTC; schedules arrive as local date + "HH:MM".
"""
from datetime import date, datetime, time, timedelta
from typing import Optional

import pytz

from ..config import settings


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """Interpret a naive wall-clock time in ``timezone_str``; unknown zones read as UTC."""
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return local_datetime.replace(tzinfo=pytz.UTC)
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC)


def parse_hhmm(raw: str) -> time:
    """Parse "HH:MM" (seconds tolerated). Raises ValueError on bad input."""
    parts = raw.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time: {raw!r}")
    hour, minute = int(parts[0]), int(parts[1])
    return time(hour, minute)


def combine_date_time(date_val: date, time_val: time, timezone_str: Optional[str] = None) -> datetime:
    """Local date plus time, in the default timezone unless given, as aware UTC."""
    naive_dt = datetime.combine(date_val, time_val)
    return local_to_utc(naive_dt, timezone_str or settings.tz_default)


def lease_deadline(now: datetime, minutes: Optional[int] = None) -> datetime:
    if minutes is None:
        minutes = settings.inactivity_timeout_min
    return ensure_utc(now) + timedelta(minutes=minutes)


def is_expired(deadline: Optional[datetime], now: datetime) -> bool:
    if deadline is None:
        return True
    return ensure_utc(deadline) <= ensure_utc(now)

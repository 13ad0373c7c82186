"""
Timezone utilities for cinecanon.
Provides consistent UTC datetime handling. Timestamps read back from engines
without timezone support (SQLite) come back naive and are treated as UTC.
"""
from datetime import date, datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone.
    If timezone-aware, converts to UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    else:
        return dt.astimezone(timezone.utc)


def safe_datetime_diff_days(dt1: Optional[datetime], dt2: Optional[datetime]) -> float:
    """
    Safely calculate difference between two datetimes in days.
    Returns 0.0 if either datetime is None.
    """
    return safe_datetime_diff_hours(dt1, dt2) / 24


def safe_datetime_diff_hours(dt1: Optional[datetime], dt2: Optional[datetime]) -> float:
    """Difference dt1 - dt2 in hours, 0.0 if either side is missing."""
    if dt1 is None or dt2 is None:
        return 0.0

    diff = ensure_utc(dt1) - ensure_utc(dt2)
    return diff.total_seconds() / 3600


def format_iso_utc(dt: Optional[datetime]) -> str:
    """
    Format datetime as ISO string in UTC.
    Returns empty string if datetime is None.
    """
    if dt is None:
        return ""

    return ensure_utc(dt).isoformat()


def decade_of(value: Union[date, datetime, str, int, None]) -> Optional[int]:
    """Return the decade bucket (1975 -> 1970) for a release date or year.

    Accepts dates, datetimes, ISO strings ("1975-06-20", "1975") and plain
    years. Anything missing or unparseable yields None.
    """
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return (value.year // 10) * 10
    if isinstance(value, int):
        return (value // 10) * 10 if value > 0 else None
    text = str(value).strip()
    if len(text) < 4 or not text[:4].isdigit():
        return None
    year = int(text[:4])
    if year <= 0:
        return None
    return (year // 10) * 10

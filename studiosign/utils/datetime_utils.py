"""
Timezone-aware datetime utilities.

All datetime operations should use these helpers to ensure consistent
timezone handling across the codebase.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def parse_db_timestamp(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Parse timestamp from database, ensuring timezone-aware UTC.

    Handles:
    - ISO format strings with Z suffix
    - ISO format strings with +00:00 offset
    - Naive datetimes (assumed UTC)
    - Already timezone-aware datetimes

    Returns:
        Timezone-aware datetime in UTC, or None if input is None/empty/unparseable
    """
    if value is None:
        return None

    if isinstance(value, str):
        if not value:
            return None
        value = value.replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    elif isinstance(value, datetime):
        dt = value
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def is_past(timestamp: Optional[Union[str, datetime]], now: Optional[datetime] = None) -> bool:
    """
    Check whether a deadline has passed.
    A missing deadline never passes.
    """
    dt = parse_db_timestamp(timestamp)
    if dt is None:
        return False
    return (now or utc_now()) >= dt


def seconds_until(timestamp: Optional[Union[str, datetime]]) -> int:
    """Whole seconds until timestamp, floored at zero."""
    dt = parse_db_timestamp(timestamp)
    if dt is None:
        return 0
    return max(0, int((dt - utc_now()).total_seconds()))


def add_hours(dt: datetime, hours: float) -> datetime:
    return dt + timedelta(hours=hours)


def earliest(*values: Optional[datetime]) -> Optional[datetime]:
    """Earliest of the non-None datetimes, or None."""
    present = [parse_db_timestamp(v) for v in values if v is not None]
    return min(present) if present else None


def format_display(dt: Optional[Union[str, datetime]]) -> str:
    """Format datetime for PDFs and emails."""
    parsed = parse_db_timestamp(dt)
    if parsed is None:
        return "-"
    return parsed.strftime("%Y-%m-%d %H:%M:%S UTC")

"""
Timezone-aware datetime helpers.

All timestamps stored by the organizer are timezone-aware UTC datetimes.
Due dates are calendar dates with an optional "HH:MM" time; the helpers
here combine the two into a single instant for overdue and countdown
arithmetic.
"""

from datetime import date, datetime, time, timedelta, timezone
import math
from typing import Optional, Union

SECONDS_PER_DAY = 24 * 60 * 60


def utc_now() -> datetime:
    """Get current UTC datetime with timezone awareness."""
    return datetime.now(timezone.utc)


def utc_today() -> date:
    """Get the current UTC calendar date."""
    return utc_now().date()


def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
    """
    Ensure datetime is timezone-aware.

    Args:
        dt: Datetime object to check
        default_tz: Default timezone to use if datetime is naive (defaults to UTC)

    Returns:
        datetime: Timezone-aware datetime object
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=default_tz or timezone.utc)
    return dt


def parse_due_time(value: Union[str, time, None]) -> Optional[time]:
    """Parse an "HH:MM" (or "H:MM") due time. Returns None for empty input."""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    hours, _, minutes = str(value).strip().partition(":")
    return time(hour=int(hours), minute=int(minutes or 0))


def combine_due(due_date: Optional[date], due_time: Union[str, time, None] = None) -> Optional[datetime]:
    """
    Combine a due date and optional due time into one UTC instant.

    The time defaults to midnight when absent.
    """
    if due_date is None:
        return None
    if isinstance(due_date, datetime):
        due_date = due_date.date()
    parsed_time = parse_due_time(due_time) or time(0, 0)
    return datetime.combine(due_date, parsed_time, tzinfo=timezone.utc)


def days_between(target: datetime, now: Optional[datetime] = None) -> int:
    """Whole days from now until target, rounded up (negative when target is in the past)."""
    now = ensure_timezone_aware(now or utc_now())
    delta = ensure_timezone_aware(target) - now
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def days_ago(days: int, now: Optional[datetime] = None) -> datetime:
    """Return the instant `days` days before now."""
    return ensure_timezone_aware(now or utc_now()) - timedelta(days=days)

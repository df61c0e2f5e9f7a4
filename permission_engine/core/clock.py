"""Time helpers. All stored timestamps are naive UTC."""

from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time without tzinfo, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_local(value: datetime, tz_name: str) -> datetime:
    """Naive UTC to the named zone's wall clock, for hour-of-day rules."""
    return value.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name))

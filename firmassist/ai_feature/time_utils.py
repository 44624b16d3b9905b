from datetime import datetime, timedelta, timezone
from typing import Optional

# Look-back length of each named statistics window
PERIOD_DAYS = {
    "week": 7,
    "month": 30,
    "quarter": 90,
    "year": 365,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps (SQLite hands them back without tz)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of a named window, or None for "all"."""
    days = PERIOD_DAYS.get(period)
    if days is None:
        return None
    return (now or utc_now()) - timedelta(days=days)

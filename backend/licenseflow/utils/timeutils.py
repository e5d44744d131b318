"""
Time helpers shared by the accrual and validation paths.
"""

from datetime import datetime, date, time, timezone, timedelta
from typing import Optional


def utcnow() -> datetime:
    """Get current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from the store as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def midnight(value: datetime) -> datetime:
    """Truncate a timestamp to 00:00 UTC of the same day."""
    value = ensure_utc(value)
    return datetime.combine(value.date(), time.min, tzinfo=timezone.utc)


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)

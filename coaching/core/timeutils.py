"""
Single internal time type: timezone-aware UTC datetime.

Values read back from the database may be naive (SQLite drops tzinfo), so every
comparison goes through ensure_utc.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are assumed to be UTC; aware ones are converted to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def deadline_passed(now: datetime, deadline: datetime) -> bool:
    """True when now is strictly after the deadline; now == deadline is still open."""
    return ensure_utc(now) > ensure_utc(deadline)

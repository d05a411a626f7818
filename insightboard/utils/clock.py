"""
utils/clock.py

Timezone helpers. Every timestamp InsightBoard compares is UTC-aware;
SQLite hands back naive datetimes, so values read from the store are
normalised through `as_utc` before comparison.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

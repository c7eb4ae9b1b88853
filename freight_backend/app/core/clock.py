"""
Clock abstraction.

All dispatch timing (expiry, response deadlines, tracking plausibility) reads
time through a Clock so tests can drive it.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Wall clock returning naive UTC datetimes."""

    def now(self) -> datetime:
        return utcnow()


system_clock = Clock()


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize client-supplied timestamps to the storage convention."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

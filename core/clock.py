"""
core/clock.py -- Wall-clock source for expiry math.

The token codec and session manager take a Clock in their constructors so
tests can move time forward past a TTL without sleeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def to_timestamp(moment: datetime) -> int:
    """Seconds since the epoch, truncated, as stored in JWT numeric claims."""
    return int(moment.timestamp())

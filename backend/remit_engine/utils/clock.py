"""
Clock helpers.

Timestamps are stored as naive UTC. Services take a Clock so time-based
thresholds and delivery backoff can be driven deterministically in tests.
"""
from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Naive UTC now, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Wall clock."""

    def now(self) -> datetime:
        return utc_now()


class FrozenClock(Clock):
    """Manually advanced clock."""

    def __init__(self, start: datetime = None):
        self.current = start or utc_now()

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

"""
UTC clock helpers.

Day buckets are derived from UTC wall-clock time only, so every device of a
user agrees on which counter a consumption lands in.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_key(moment: datetime) -> str:
    """Return the ``yyyy-mm-dd`` UTC bucket for ``moment``."""
    if moment.tzinfo is None:
        raise ValueError("day_key requires a timezone-aware datetime")
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


def seconds_until_next_day(moment: datetime) -> float:
    """Seconds from ``moment`` to the next UTC midnight."""
    current = moment.astimezone(timezone.utc)
    midnight = (current + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (midnight - current).total_seconds()


class ManualClock:
    """Controllable clock for tests and replay tooling."""

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware start")
        self._now = start

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware datetime")
        self._now = moment

"""Wall-clock sources for the scheduler.

Everything that needs "now" takes a clock so tests can pin time.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo


def as_utc(moment: datetime) -> datetime:
    """Convert an aware datetime to UTC.

    Aware datetimes that share a tzinfo compare by wall clock and ignore
    ``fold``, so instants must be ordered in UTC across DST transitions.
    """
    return moment.astimezone(timezone.utc)


class Clock(Protocol):
    """Supplies the current timezone-aware time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system time.

    Args:
        timezone: IANA zone name (e.g. "Europe/Berlin"). When omitted the
            system's local zone is used.
    """

    def __init__(self, timezone: str | None = None) -> None:
        self._tz: tzinfo | None = ZoneInfo(timezone) if timezone else None

    def now(self) -> datetime:
        if self._tz is None:
            return datetime.now().astimezone()
        return datetime.now(self._tz)


class FixedClock:
    """Clock that always returns a settable instant."""

    def __init__(self, now: datetime) -> None:
        if now.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, delta: timedelta) -> None:
        self._now = self._now + delta

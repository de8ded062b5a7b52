"""Occurrence computation for job cadences.

This module computes the next firing instant for each frequency
(once, hourly, daily, weekly, monthly). Hourly, daily and weekly
cadences are evaluated as cron expressions; monthly cadences are
computed directly so that short months can be clamped.
"""

import calendar
import logging
from datetime import date, datetime, time, timedelta, tzinfo

from croniter import croniter

from cadence.jobs.clock import as_utc
from cadence.jobs.errors import MissingFieldError
from cadence.jobs.types import WEEKDAYS, Cadence, Frequency

logger = logging.getLogger(__name__)


def next_occurrence(cadence: Cadence, now: datetime) -> datetime:
    """Compute the next instant a cadence fires.

    Every frequency except ``once`` returns an instant strictly after
    ``now``. A ``once`` cadence returns its exact date and time, even
    if that is already in the past.

    Args:
        cadence: The cadence to evaluate.
        now: Current time. The result is in the same timezone.

    Returns:
        The next occurrence.

    Raises:
        MissingFieldError: If a field required by the frequency is absent.
    """
    frequency = cadence.frequency

    if frequency == Frequency.ONCE:
        return _compute_once(cadence, now)
    elif frequency == Frequency.MONTHLY:
        return _compute_monthly(cadence, now)
    else:
        expr = _cron_expression(cadence)
        next_run = croniter(expr, now).get_next(datetime)
        logger.debug(f"Cron '{expr}' after {now.isoformat()} -> {next_run.isoformat()}")
        return next_run


def _require(cadence: Cadence, field: str):
    value = getattr(cadence, field)
    if value is None:
        raise MissingFieldError(cadence.frequency.value, field)
    return value


def _time_of_day(cadence: Cadence) -> time:
    return time.fromisoformat(_require(cadence, "time"))


def _cron_expression(cadence: Cadence) -> str:
    """Translate an hourly, daily or weekly cadence into a cron expression."""
    if cadence.frequency == Frequency.HOURLY:
        return "0 * * * *"

    at = _time_of_day(cadence)
    if cadence.frequency == Frequency.DAILY:
        return f"{at.minute} {at.hour} * * *"
    if cadence.frequency == Frequency.WEEKLY:
        dow = WEEKDAYS.index(_require(cadence, "weekday"))
        return f"{at.minute} {at.hour} * * {dow}"

    raise ValueError(f"No cron form for frequency: {cadence.frequency}")


def _compute_once(cadence: Cadence, now: datetime) -> datetime:
    day = date.fromisoformat(_require(cadence, "date"))
    return datetime.combine(day, _time_of_day(cadence), tzinfo=now.tzinfo)


def _clamped(year: int, month: int, day: int, at: time, tz: tzinfo | None) -> datetime:
    """Build ``year-month-day@at``, moving past-the-end days to the month's last day."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime.combine(date(year, month, min(day, last_day)), at, tzinfo=tz)


def _compute_monthly(cadence: Cadence, now: datetime) -> datetime:
    day = _require(cadence, "day_of_month")
    at = _time_of_day(cadence)

    candidate = _clamped(now.year, now.month, day, at, now.tzinfo)
    if as_utc(candidate) > as_utc(now):
        return candidate

    if now.month == 12:
        year, month = now.year + 1, 1
    else:
        year, month = now.year, now.month + 1
    return _clamped(year, month, day, at, now.tzinfo)


def validate_cadence(cadence: Cadence) -> None:
    """Check that a cadence carries every field its frequency requires.

    Raises:
        MissingFieldError: If a required field is absent.
    """
    required = {
        Frequency.ONCE: ("date", "time"),
        Frequency.HOURLY: (),
        Frequency.DAILY: ("time",),
        Frequency.WEEKLY: ("weekday", "time"),
        Frequency.MONTHLY: ("day_of_month", "time"),
    }
    for field in required[cadence.frequency]:
        _require(cadence, field)


def cadence_description(cadence: Cadence) -> str:
    """Get a human-readable description of a cadence."""
    frequency = cadence.frequency
    if frequency == Frequency.ONCE:
        return f"once at {cadence.date} {cadence.time}"
    if frequency == Frequency.HOURLY:
        return "every hour"
    if frequency == Frequency.DAILY:
        return f"daily at {cadence.time}"
    if frequency == Frequency.WEEKLY:
        return f"weekly on {cadence.weekday} at {cadence.time}"
    return f"monthly on day {cadence.day_of_month} at {cadence.time}"


def time_until_next_run(cadence: Cadence, now: datetime) -> timedelta:
    """Get the time remaining until the next occurrence.

    Negative for a ``once`` cadence whose moment has passed.
    """
    return next_occurrence(cadence, now) - now

"""Parsing of human-entered time expressions.

Turns strings like "10 seconds", "5 minutes", "2 hours", "now" or
"3:30pm" into either a relative delay or an absolute instant.
"""

import logging
import re
from datetime import datetime, timedelta

from cadence.jobs.clock import as_utc
from cadence.jobs.errors import UnparsableExpression

logger = logging.getLogger(__name__)

# Checked in order; the first unit whose keyword appears wins
_RELATIVE_UNITS = (
    ("second", re.compile(r"(\d+)\s*second"), 1),
    ("minute", re.compile(r"(\d+)\s*minute"), 60),
    ("hour", re.compile(r"(\d+)\s*hour"), 60 * 60),
)

_CLOCK_TIME = re.compile(r"(\d{1,2}):(\d{2})\s*(am|pm)?")


def parse_time_expression(expression: str, now: datetime) -> timedelta | datetime:
    """Parse a time expression.

    Args:
        expression: Text such as "10 seconds", "now" or "3:30pm".
        now: Current time, used to anchor clock times.

    Returns:
        A timedelta for relative expressions, or a datetime for clock
        times. Clock times that are not after ``now`` roll to tomorrow.

    Raises:
        UnparsableExpression: If no known form matches.
    """
    text = expression.strip().lower()

    for keyword, pattern, seconds_per_unit in _RELATIVE_UNITS:
        if keyword in text:
            match = pattern.search(text)
            # "a minute" has no number
            count = int(match.group(1)) if match else 1
            return timedelta(seconds=count * seconds_per_unit)

    if text == "now":
        return timedelta(0)

    match = _CLOCK_TIME.search(text)
    if match is None:
        raise UnparsableExpression(f"Cannot parse time: {expression}")

    hours = int(match.group(1))
    minutes = int(match.group(2))
    meridiem = match.group(3)

    if meridiem == "pm" and hours < 12:
        hours += 12
    elif meridiem == "am" and hours == 12:
        hours = 0

    if hours > 23 or minutes > 59:
        raise UnparsableExpression(f"Cannot parse time: {expression}")

    target = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if as_utc(target) <= as_utc(now):
        target += timedelta(days=1)

    logger.debug(f"Parsed {expression!r} as clock time {target.isoformat()}")
    return target


def resolve_fire_time(expression: str, now: datetime) -> tuple[datetime, timedelta]:
    """Resolve an expression to an absolute fire time and the delay until it.

    Args:
        expression: Time expression accepted by parse_time_expression.
        now: Current time.

    Returns:
        Tuple of (fire_at, delay).
    """
    parsed = parse_time_expression(expression, now)
    if isinstance(parsed, timedelta):
        return now + parsed, parsed
    return parsed, parsed - now

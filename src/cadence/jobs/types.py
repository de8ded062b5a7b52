"""Type definitions for the job scheduling system.

This module defines the Pydantic models used for job cadences,
persisted job records and job creation requests.
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from cadence.jobs.clock import as_utc

# Cron day-of-week numbering: 0 = Sunday
WEEKDAYS = (
    "sunday",
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
)


class Frequency(str, Enum):
    """Recurrence rule of a job.

    Attributes:
        ONCE: Fires a single time at a specific date and time.
        HOURLY: Fires at the top of every hour.
        DAILY: Fires every day at a time of day.
        WEEKLY: Fires on one weekday at a time of day.
        MONTHLY: Fires on one day of the month at a time of day.
    """

    ONCE = "once"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def _check_time(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        parsed = datetime.strptime(value.strip(), "%H:%M")
    except ValueError:
        raise ValueError(f"time must be HH:MM (24h), got {value!r}") from None
    return parsed.strftime("%H:%M")


def _check_date(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        raise ValueError(f"date must be YYYY-MM-DD, got {value!r}") from None


def _check_weekday(value: str | None) -> str | None:
    if value is None:
        return None
    name = value.strip().lower()
    for weekday in WEEKDAYS:
        if name == weekday or (len(name) >= 3 and weekday.startswith(name)):
            return weekday
    raise ValueError(f"unknown weekday: {value!r}")


TimeOfDay = Annotated[str | None, AfterValidator(_check_time)]
CalendarDate = Annotated[str | None, AfterValidator(_check_date)]
Weekday = Annotated[str | None, AfterValidator(_check_weekday)]
DayOfMonth = Annotated[int | None, Field(ge=1, le=31)]

# bool first so that True/False are never coerced to 1/0
ContextValue = bool | int | float | str


class Cadence(BaseModel):
    """Recurrence rule of a job plus the fields its frequency needs.

    Which fields are required depends on the frequency:

    - once: date, time
    - hourly: nothing
    - daily: time
    - weekly: weekday, time
    - monthly: day_of_month, time

    Missing fields are reported by the occurrence calculator, not here,
    so a partially filled cadence can still be built and inspected.
    """

    model_config = ConfigDict(populate_by_name=True)

    frequency: Frequency
    time: TimeOfDay = None
    date: CalendarDate = None
    weekday: Weekday = None
    day_of_month: DayOfMonth = Field(default=None, alias="dayOfMonth")


class JobCreate(BaseModel):
    """Input model for scheduling a new job.

    Attributes:
        name: Human-readable job name.
        command: Command line handed to the dispatcher.
        frequency: Recurrence rule.
        time: Time of day as HH:MM.
        date: Calendar date as YYYY-MM-DD (once jobs).
        weekday: Day name (weekly jobs).
        day_of_month: Day of the month, 1-31 (monthly jobs).
        context: Values exposed to the command as environment variables.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, description="Human-readable job name")
    command: str = Field(..., min_length=1, description="Command to execute")
    frequency: Frequency = Field(..., description="Recurrence rule")
    time: TimeOfDay = None
    date: CalendarDate = None
    weekday: Weekday = None
    day_of_month: DayOfMonth = Field(default=None, alias="dayOfMonth")
    context: dict[str, ContextValue] = Field(default_factory=dict)

    @property
    def cadence(self) -> Cadence:
        return Cadence(
            frequency=self.frequency,
            time=self.time,
            date=self.date,
            weekday=self.weekday,
            day_of_month=self.day_of_month,
        )


class Job(BaseModel):
    """A persisted job record.

    Serialized with camelCase field names (``dayOfMonth``, ``createdAt``,
    ``lastRun``, ``nextRun``); either spelling is accepted on input.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique job identifier")
    name: str = Field(..., min_length=1, description="Human-readable job name")
    command: str = Field(..., description="Command to execute")
    frequency: Frequency = Field(..., description="Recurrence rule")
    time: TimeOfDay = None
    date: CalendarDate = None
    weekday: Weekday = None
    day_of_month: DayOfMonth = Field(default=None, alias="dayOfMonth")
    context: dict[str, ContextValue] = Field(default_factory=dict)
    created_at: datetime = Field(..., alias="createdAt")
    last_run: datetime | None = Field(default=None, alias="lastRun")
    next_run: datetime = Field(..., alias="nextRun")
    enabled: bool = True

    @property
    def cadence(self) -> Cadence:
        return Cadence(
            frequency=self.frequency,
            time=self.time,
            date=self.date,
            weekday=self.weekday,
            day_of_month=self.day_of_month,
        )

    def is_one_shot(self) -> bool:
        """Check if this job fires only once."""
        return self.frequency == Frequency.ONCE

    def is_due(self, now: datetime) -> bool:
        """Check if the job should be dispatched at ``now``.

        Args:
            now: Current time.

        Returns:
            True if the job is enabled and its next run has arrived.
        """
        if not self.enabled:
            return False
        return as_utc(now) >= as_utc(self.next_run)

    def to_record(self) -> dict:
        """Serialize to the on-disk record layout."""
        return self.model_dump(mode="json", by_alias=True)

"""Job scheduling system for recurring and one-shot commands.

This package provides:
- Cadences (once, hourly, daily, weekly, monthly) and next-run computation
- JSON file persistence with file locking
- Command dispatch with context exposed as environment variables
- Detached one-shot dispatch from time expressions ("5 minutes", "3:30pm")

Example:
    from cadence.jobs import JobScheduler, JobStore

    scheduler = JobScheduler(JobStore("jobs.json"))

    # Create a weekly job
    job = scheduler.schedule(
        name="Weekly backup",
        command="./backup.sh",
        frequency="weekly",
        weekday="monday",
        time="09:00",
    )

    # Called by an external trigger (cron, systemd timer, ...)
    await scheduler.run_due_jobs()
"""

from cadence.jobs.clock import Clock, FixedClock, SystemClock
from cadence.jobs.detached import DetachedHandle, OneShotRecord, list_pending, schedule_once
from cadence.jobs.errors import (
    JobAlreadyRunning,
    JobDisabledError,
    JobNotFound,
    JobValidationError,
    MissingFieldError,
    PersistenceError,
    SchedulerError,
    StoreCorruptedWarning,
    UnparsableExpression,
)
from cadence.jobs.executor import CommandExecutor, ExecutionResult, build_environment
from cadence.jobs.schedule import (
    cadence_description,
    next_occurrence,
    time_until_next_run,
    validate_cadence,
)
from cadence.jobs.service import JobScheduler
from cadence.jobs.storage import JobStore
from cadence.jobs.timeexpr import parse_time_expression, resolve_fire_time
from cadence.jobs.types import Cadence, Frequency, Job, JobCreate

__all__ = [
    # Engine
    "JobScheduler",
    # Types
    "Cadence",
    "Frequency",
    "Job",
    "JobCreate",
    # Storage
    "JobStore",
    # Executor
    "CommandExecutor",
    "ExecutionResult",
    "build_environment",
    # Clocks
    "Clock",
    "SystemClock",
    "FixedClock",
    # Schedule utilities
    "next_occurrence",
    "validate_cadence",
    "cadence_description",
    "time_until_next_run",
    # Time expressions
    "parse_time_expression",
    "resolve_fire_time",
    # Detached one-shots
    "schedule_once",
    "list_pending",
    "DetachedHandle",
    "OneShotRecord",
    # Errors
    "SchedulerError",
    "JobValidationError",
    "MissingFieldError",
    "UnparsableExpression",
    "JobNotFound",
    "JobAlreadyRunning",
    "JobDisabledError",
    "PersistenceError",
    "StoreCorruptedWarning",
]

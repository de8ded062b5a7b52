"""Cadence - recurring job scheduling and command dispatch."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("cadence-scheduler")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from cadence.jobs.service import JobScheduler
from cadence.jobs.storage import JobStore
from cadence.jobs.types import Frequency, Job, JobCreate

__all__ = ["JobScheduler", "JobStore", "Job", "JobCreate", "Frequency"]

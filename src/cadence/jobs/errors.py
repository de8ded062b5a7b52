"""Exception types for the job scheduling system."""


class SchedulerError(Exception):
    """Base class for all scheduling errors."""


class JobValidationError(SchedulerError):
    """Raised when a job description is rejected before any state change."""


class MissingFieldError(JobValidationError):
    """Raised when a cadence lacks a field its frequency requires."""

    def __init__(self, frequency: str, field: str) -> None:
        self.frequency = frequency
        self.field = field
        super().__init__(f"'{field}' is required for {frequency} jobs")


class UnparsableExpression(SchedulerError):
    """Raised when a time expression matches none of the known forms."""


class JobNotFound(SchedulerError):
    """Raised when a job ID is not present in the store."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobAlreadyRunning(SchedulerError):
    """Raised when a job is dispatched while a previous dispatch is in flight."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job is already running: {job_id}")


class JobDisabledError(SchedulerError):
    """Raised when a retired or disabled job is asked to run."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job is disabled: {job_id}")


class PersistenceError(SchedulerError):
    """Raised when the job store cannot be durably written."""


class StoreCorruptedWarning(UserWarning):
    """Emitted when the job store file cannot be read or parsed."""

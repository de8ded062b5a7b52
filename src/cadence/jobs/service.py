"""Scheduler engine for persisted jobs.

This module provides the JobScheduler class that ties together
occurrence computation, the job store and the command executor:
scheduling new jobs, dispatching them on request and rolling their
schedule forward (or retiring them) afterwards.
"""

import logging
import uuid
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import ValidationError as PydanticValidationError

from cadence.config import Settings
from cadence.jobs import detached
from cadence.jobs.clock import Clock, SystemClock, as_utc
from cadence.jobs.detached import DetachedHandle, OneShotRecord
from cadence.jobs.errors import (
    JobAlreadyRunning,
    JobDisabledError,
    JobNotFound,
    JobValidationError,
    PersistenceError,
)
from cadence.jobs.executor import CommandExecutor, ExecutionResult
from cadence.jobs.schedule import next_occurrence, validate_cadence
from cadence.jobs.storage import JobStore
from cadence.jobs.timeexpr import resolve_fire_time
from cadence.jobs.types import ContextValue, Frequency, Job, JobCreate

logger = logging.getLogger(__name__)


def _describe_validation_error(error: PydanticValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err["loc"])
        parts.append(f"{location}: {err['msg']}" if location else err["msg"])
    return "; ".join(parts)


class JobScheduler:
    """Engine managing the lifecycle of persisted jobs.

    Each job moves Scheduled -> Running -> Completed/Failed. A completed
    recurring job goes back to Scheduled with a fresh next run; a
    completed ``once`` job is retired (disabled). A failed dispatch
    leaves the job exactly as it was, so the next due-check retries it.

    The engine never fires jobs on its own; callers trigger
    ``run_job`` or ``run_due_jobs``.

    Example:
        scheduler = JobScheduler(JobStore("~/.cadence/jobs.json"))

        job = scheduler.schedule(
            name="daily-report",
            command="./report.sh",
            frequency="daily",
            time="14:30",
        )

        await scheduler.run_due_jobs()
    """

    def __init__(
        self,
        store: JobStore,
        executor: CommandExecutor | None = None,
        clock: Clock | None = None,
        runtime_dir: str | Path | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Job store owning the job list.
            executor: Dispatcher for job commands.
            clock: Source of the current time.
            runtime_dir: Directory for per-job run locks and one-shot
                records (defaults to ``run`` next to the store).
        """
        self._store = store
        self._executor = executor or CommandExecutor()
        self._clock = clock or SystemClock()
        self._runtime_dir = Path(runtime_dir) if runtime_dir else store.path.parent / "run"
        self._running: set[str] = set()

    @classmethod
    def from_settings(cls, config: Settings) -> "JobScheduler":
        """Build a scheduler wired up from application settings."""
        return cls(
            store=JobStore(config.get_jobs_path(), lock_timeout=config.lock_timeout_seconds),
            executor=CommandExecutor(
                env_prefix=config.context_env_prefix,
                timeout_seconds=config.dispatch_timeout_seconds,
            ),
            clock=SystemClock(config.timezone),
            runtime_dir=config.get_runtime_dir(),
        )

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def runtime_dir(self) -> Path:
        return self._runtime_dir

    def _generate_id(self) -> str:
        return f"job_{uuid.uuid4().hex[:12]}"

    def schedule_job(self, create: JobCreate) -> Job:
        """Create and persist a new job.

        Args:
            create: Job creation parameters.

        Returns:
            The stored job with its first next run.

        Raises:
            MissingFieldError: If the cadence lacks a required field.
            JobValidationError: If a once job's moment is not in the future.
            PersistenceError: If the store could not be written.
        """
        cadence = create.cadence
        validate_cadence(cadence)

        now = self._clock.now()
        next_run = next_occurrence(cadence, now)
        if as_utc(next_run) <= as_utc(now):
            raise JobValidationError(
                f"Scheduled time {next_run.isoformat()} is in the past"
            )

        job = Job(
            id=self._generate_id(),
            name=create.name,
            command=create.command,
            frequency=create.frequency,
            time=create.time,
            date=create.date,
            weekday=create.weekday,
            day_of_month=create.day_of_month,
            context=create.context,
            created_at=now,
            next_run=next_run,
        )
        self._store.add(job)

        logger.info(f"Scheduled job: {job.name} ({job.id}), next run {next_run.isoformat()}")
        return job

    def schedule(
        self,
        name: str,
        command: str,
        frequency: Frequency | str,
        *,
        time: str | None = None,
        date: str | None = None,
        weekday: str | None = None,
        day_of_month: int | None = None,
        context: dict[str, ContextValue] | None = None,
    ) -> Job:
        """Validate raw job fields and schedule the job.

        Raises:
            JobValidationError: If any field is missing or malformed.
        """
        try:
            create = JobCreate(
                name=name,
                command=command,
                frequency=frequency,
                time=time,
                date=date,
                weekday=weekday,
                day_of_month=day_of_month,
                context=context or {},
            )
        except PydanticValidationError as e:
            raise JobValidationError(_describe_validation_error(e)) from e

        return self.schedule_job(create)

    def list_jobs(self) -> list[Job]:
        """List all jobs in insertion order."""
        return self._store.list()

    def get_job(self, job_id: str) -> Job:
        """Get a job by ID.

        Raises:
            JobNotFound: If no job has this ID.
        """
        return self._store.find_by_id(job_id)

    def remove_job(self, job_id: str) -> Job:
        """Remove a job and return it.

        Raises:
            JobNotFound: If no job has this ID.
        """
        return self._store.remove(job_id)

    def clear_jobs(self) -> int:
        """Remove every job.

        Returns:
            Number of jobs removed.
        """
        return self._store.clear()

    async def run_job(self, job_id: str) -> ExecutionResult:
        """Dispatch a job now and update its schedule.

        Args:
            job_id: The job ID.

        Returns:
            Execution result. A failed dispatch is reported here, not raised.

        Raises:
            JobNotFound: If no job has this ID.
            JobDisabledError: If the job is retired.
            JobAlreadyRunning: If the job is being dispatched elsewhere.
            PersistenceError: If the outcome could not be stored.
        """
        if job_id in self._running:
            raise JobAlreadyRunning(job_id)

        job = self._store.find_by_id(job_id)
        if not job.enabled:
            raise JobDisabledError(job_id)

        run_lock = FileLock(str(self._runtime_dir / f"{job_id}.run.lock"), timeout=0)
        try:
            self._runtime_dir.mkdir(parents=True, exist_ok=True)
            run_lock.acquire()
        except Timeout:
            raise JobAlreadyRunning(job_id) from None
        except OSError as e:
            raise PersistenceError(f"Cannot create run lock for {job_id}: {e}") from e

        self._running.add(job_id)
        try:
            # Another process may have run or removed it before we got the lock
            job = self._store.find_by_id(job_id)
            if not job.enabled:
                raise JobDisabledError(job_id)
            return await self._execute_job(job)
        finally:
            self._running.discard(job_id)
            run_lock.release()

    async def _execute_job(self, job: Job) -> ExecutionResult:
        """Execute a job and persist its new state.

        Args:
            job: The job to execute.

        Returns:
            Execution result.
        """
        logger.info(f"Running job: {job.name} ({job.id})")
        result = await self._executor.execute(job.command, job.context)

        if not result.success:
            logger.warning(
                f"Job failed: {job.name} ({job.id}) - {result.error}; "
                f"next run stays {job.next_run.isoformat()}"
            )
            return result

        now = self._clock.now()
        if job.is_one_shot():
            updated = job.model_copy(update={"last_run": now, "enabled": False})
            logger.info(f"Retired one-shot job: {job.name} ({job.id})")
        else:
            next_run = next_occurrence(job.cadence, now)
            updated = job.model_copy(update={"last_run": now, "next_run": next_run})
            logger.info(f"Job {job.name} ({job.id}) next run {next_run.isoformat()}")

        try:
            self._store.update(updated)
        except JobNotFound:
            logger.warning(f"Job {job.id} was removed while running; outcome not stored")

        return result

    async def run_due_jobs(self) -> list[tuple[Job, ExecutionResult]]:
        """Dispatch every enabled job whose next run has arrived.

        Jobs are run one after another. Jobs already running in another
        process, or removed or retired meanwhile, are skipped.

        Returns:
            (job, result) pairs for the jobs that were dispatched.
        """
        now = self._clock.now()
        due = [job for job in self._store.list() if job.is_due(now)]
        if due:
            logger.info(f"{len(due)} job(s) due")

        results = []
        for job in due:
            try:
                result = await self.run_job(job.id)
            except JobAlreadyRunning:
                logger.info(f"Skipping job already running: {job.name} ({job.id})")
                continue
            except (JobNotFound, JobDisabledError):
                logger.info(f"Skipping job changed since check: {job.name} ({job.id})")
                continue
            results.append((job, result))

        return results

    def schedule_once(
        self,
        command: str,
        when: str,
        context: dict[str, ContextValue] | None = None,
    ) -> DetachedHandle:
        """Run a command once, detached from this process.

        Args:
            command: Command to dispatch.
            when: Time expression such as "5 minutes" or "3:30pm".
            context: Values exposed as environment variables.

        Returns:
            Handle with the fire time and worker PID.

        Raises:
            UnparsableExpression: If ``when`` cannot be parsed.
        """
        now = self._clock.now()
        fire_at, delay = resolve_fire_time(when, now)
        logger.info(f"Will execute in {round(delay.total_seconds())} seconds")

        return detached.schedule_once(
            command,
            delay,
            now=now,
            runtime_dir=self._runtime_dir,
            context=context,
            env_prefix=self._executor.env_prefix,
            timeout_seconds=self._executor.timeout_seconds,
        )

    def pending_one_shots(self) -> list[tuple[Path, OneShotRecord]]:
        """List detached one-shots that have not fired yet."""
        return detached.list_pending(self._runtime_dir)

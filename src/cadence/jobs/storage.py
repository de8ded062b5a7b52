"""JSON file persistence for jobs.

This module handles loading and saving the job list to a JSON file.
Every mutation re-reads the file under a file lock, applies the change
to that fresh snapshot and atomically replaces the file, so concurrent
writers never lose each other's updates.
"""

import json
import logging
import os
import tempfile
import warnings
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from cadence.jobs.errors import (
    JobNotFound,
    JobValidationError,
    PersistenceError,
    StoreCorruptedWarning,
)
from cadence.jobs.types import Job

logger = logging.getLogger(__name__)

# Storage format version; other versions are treated as unreadable
STORAGE_VERSION = 1


class JobStoreData(BaseModel):
    """Root structure of the job storage file.

    Attributes:
        version: Storage format version.
        jobs: Stored jobs in insertion order.
    """

    version: int = Field(default=STORAGE_VERSION, description="Storage format version")
    jobs: list[Job] = Field(default_factory=list, description="Stored jobs")


class _UnreadableStore(Exception):
    """The storage file exists but could not be read or parsed."""


class JobStore:
    """JSON file-based storage for jobs.

    All mutating operations persist the full job list before returning;
    a failed write raises PersistenceError and leaves the previous file
    untouched.

    Example:
        store = JobStore("/path/to/jobs.json")
        store.add(job)
        jobs = store.list()
    """

    def __init__(self, path: str | Path, lock_timeout: float = 10.0) -> None:
        """Initialize the job store.

        Args:
            path: Path to the JSON storage file.
            lock_timeout: Seconds to wait for the file lock.
        """
        self._path = Path(path)
        self._lock_path = self._path.with_suffix(".lock")
        self._lock = FileLock(str(self._lock_path), timeout=lock_timeout)

    @property
    def path(self) -> Path:
        """Get the storage file path."""
        return self._path

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                yield
        except Timeout as e:
            raise PersistenceError(f"Timed out waiting for lock on {self._lock_path}") from e
        except OSError as e:
            raise PersistenceError(f"Cannot lock job store {self._path}: {e}") from e

    def _read_data(self) -> JobStoreData:
        """Read and parse the storage file.

        Returns:
            Parsed storage data; empty if the file does not exist.

        Raises:
            _UnreadableStore: If the file cannot be read or is not a valid job list.
        """
        if not self._path.exists():
            return JobStoreData()

        try:
            content = self._path.read_text(encoding="utf-8")
            if not content.strip():
                return JobStoreData()

            data = json.loads(content)

            # Accept a bare list of job records
            if isinstance(data, list):
                data = {"version": STORAGE_VERSION, "jobs": data}
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")

            version = data.get("version", STORAGE_VERSION)
            if version != STORAGE_VERSION:
                raise ValueError(f"unsupported store version {version!r}")

            return JobStoreData.model_validate(data)
        except (OSError, ValueError, PydanticValidationError) as e:
            raise _UnreadableStore(str(e)) from e

    def _write_data(self, data: JobStoreData) -> None:
        """Atomically replace the storage file.

        Raises:
            PersistenceError: If the file could not be written.
        """
        content = json.dumps(data.model_dump(mode="json", by_alias=True), indent=2)

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write job store {self._path}: {e}") from e

    def _read_for_update(self) -> JobStoreData:
        try:
            return self._read_data()
        except _UnreadableStore as e:
            raise PersistenceError(
                f"Job store {self._path} is unreadable, refusing to overwrite it: {e}"
            ) from e

    def list(self) -> list[Job]:
        """Load all jobs.

        Returns:
            Jobs in insertion order. An unreadable store yields an empty
            list and a StoreCorruptedWarning.
        """
        try:
            with self._locked():
                data = self._read_data()
        except (_UnreadableStore, PersistenceError) as e:
            logger.warning(f"Job store {self._path} is unreadable: {e}")
            warnings.warn(
                f"Job store {self._path} is unreadable: {e}",
                StoreCorruptedWarning,
                stacklevel=2,
            )
            return []

        logger.debug(f"Loaded {len(data.jobs)} jobs from {self._path}")
        return data.jobs

    def find_by_id(self, job_id: str) -> Job:
        """Get a specific job by ID.

        Raises:
            JobNotFound: If no job has this ID.
        """
        for job in self.list():
            if job.id == job_id:
                return job
        raise JobNotFound(job_id)

    def add(self, job: Job) -> None:
        """Add a new job.

        Raises:
            JobValidationError: If a job with the same ID already exists.
            PersistenceError: If the store could not be written.
        """
        with self._locked():
            data = self._read_for_update()

            if any(existing.id == job.id for existing in data.jobs):
                raise JobValidationError(f"Job with ID '{job.id}' already exists")

            data.jobs.append(job)
            self._write_data(data)

        logger.info(f"Added job: {job.name} ({job.id})")

    def update(self, job: Job) -> None:
        """Replace the stored job that has the same ID.

        Raises:
            JobNotFound: If no job has this ID.
            PersistenceError: If the store could not be written.
        """
        with self._locked():
            data = self._read_for_update()

            for i, existing in enumerate(data.jobs):
                if existing.id == job.id:
                    data.jobs[i] = job
                    self._write_data(data)
                    break
            else:
                raise JobNotFound(job.id)

        logger.debug(f"Updated job: {job.name} ({job.id})")

    def remove(self, job_id: str) -> Job:
        """Remove a job.

        Returns:
            The removed job.

        Raises:
            JobNotFound: If no job has this ID.
            PersistenceError: If the store could not be written.
        """
        with self._locked():
            data = self._read_for_update()

            for i, existing in enumerate(data.jobs):
                if existing.id == job_id:
                    removed = data.jobs.pop(i)
                    self._write_data(data)
                    break
            else:
                raise JobNotFound(job_id)

        logger.info(f"Removed job: {removed.name} ({job_id})")
        return removed

    def clear(self) -> int:
        """Remove all jobs.

        An unreadable store is reset to an empty list.

        Returns:
            Number of jobs removed.
        """
        with self._locked():
            try:
                count = len(self._read_data().jobs)
            except _UnreadableStore as e:
                logger.warning(f"Resetting unreadable job store {self._path}: {e}")
                count = 0
            self._write_data(JobStoreData())

        logger.info(f"Cleared {count} jobs")
        return count

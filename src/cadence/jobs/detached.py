"""Detached one-shot dispatch.

A one-shot is a JSON fire-at record plus an independent worker process
(``python -m cadence.jobs.worker <record>``) started in its own
session, so it keeps running after the process that scheduled it
exits. The worker sleeps until the fire time, dispatches the command,
removes its record and exits with the command's exit code.

There is no cancellation API; a pending one-shot can only be stopped
by killing its worker process.
"""

import asyncio
import json
import logging
import os
import subprocess
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from cadence.jobs.errors import SchedulerError
from cadence.jobs.executor import DEFAULT_ENV_PREFIX, CommandExecutor
from cadence.jobs.types import ContextValue

logger = logging.getLogger(__name__)

RECORD_PREFIX = "oneshot_"


class OneShotRecord(BaseModel):
    """Fire-at record consumed by the worker process.

    Attributes:
        command: Command to dispatch.
        context: Values exposed as environment variables.
        fire_at: When to dispatch.
        created_at: When the one-shot was scheduled.
        env_prefix: Prefix for context environment variables.
        timeout_seconds: Optional dispatch timeout.
        pid: Worker process ID, filled in by the worker once it starts.
    """

    command: str
    context: dict[str, ContextValue] = Field(default_factory=dict)
    fire_at: datetime
    created_at: datetime
    env_prefix: str = DEFAULT_ENV_PREFIX
    timeout_seconds: float | None = None
    pid: int | None = None


@dataclass
class DetachedHandle:
    """Observability handle for a launched one-shot.

    Attributes:
        fire_at: Absolute time the command will be dispatched.
        pid: Process ID of the background worker.
        record_path: Fire-at record, removed once the command has run.
    """

    fire_at: datetime
    pid: int
    record_path: Path


def _write_record(path: Path, record: OneShotRecord) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(record.model_dump(mode="json"), indent=2), encoding="utf-8")
    tmp.replace(path)


def _read_record(path: Path) -> OneShotRecord:
    return OneShotRecord.model_validate_json(path.read_text(encoding="utf-8"))


def schedule_once(
    command: str,
    delay: timedelta,
    *,
    now: datetime,
    runtime_dir: str | Path,
    context: dict[str, ContextValue] | None = None,
    log_path: str | Path | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    timeout_seconds: float | None = None,
) -> DetachedHandle:
    """Launch a background worker that runs ``command`` after ``delay``.

    Args:
        command: Command to dispatch.
        delay: How long to wait; negative delays fire immediately.
        now: Current time, used to compute the absolute fire time.
        runtime_dir: Directory holding fire-at records.
        context: Values exposed as environment variables.
        log_path: File receiving the worker's output
            (defaults to ``<runtime_dir>/detached.log``).
        env_prefix: Prefix for context environment variables.
        timeout_seconds: Optional dispatch timeout.

    Returns:
        Handle with the fire time and worker PID.

    Raises:
        SchedulerError: If the worker process could not be started.
    """
    runtime_dir = Path(runtime_dir)
    runtime_dir.mkdir(parents=True, exist_ok=True)
    log_path = Path(log_path) if log_path else runtime_dir / "detached.log"

    fire_at = now + max(delay, timedelta(0))
    record_path = runtime_dir / f"{RECORD_PREFIX}{uuid.uuid4().hex[:12]}.json"
    _write_record(record_path, OneShotRecord(
        command=command,
        context=context or {},
        fire_at=fire_at,
        created_at=now,
        env_prefix=env_prefix,
        timeout_seconds=timeout_seconds,
    ))

    try:
        with open(log_path, "ab") as log_file:
            process = subprocess.Popen(
                [sys.executable, "-m", "cadence.jobs.worker", str(record_path)],
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
    except OSError as e:
        record_path.unlink(missing_ok=True)
        raise SchedulerError(f"Failed to start background scheduler: {e}") from e

    logger.info(
        f"Background scheduler started (PID: {process.pid}), "
        f"fires at {fire_at.isoformat()}"
    )
    return DetachedHandle(fire_at=fire_at, pid=process.pid, record_path=record_path)


def list_pending(runtime_dir: str | Path) -> list[tuple[Path, OneShotRecord]]:
    """List one-shots that have not fired yet.

    Unreadable records are skipped with a warning.

    Returns:
        (record_path, record) pairs ordered by fire time.
    """
    runtime_dir = Path(runtime_dir)
    if not runtime_dir.is_dir():
        return []

    pending = []
    for path in runtime_dir.glob(f"{RECORD_PREFIX}*.json"):
        try:
            pending.append((path, _read_record(path)))
        except (OSError, PydanticValidationError) as e:
            logger.warning(f"Skipping unreadable one-shot record {path}: {e}")

    pending.sort(key=lambda item: item[1].fire_at)
    return pending


async def run_record(record_path: Path, pid: int | None = None) -> int:
    """Wait for a record's fire time, dispatch it and clean up.

    Args:
        record_path: Fire-at record to run.
        pid: Worker PID to stamp on the record while it waits.

    Returns:
        The dispatched command's exit status.
    """
    record = _read_record(record_path)
    if pid is not None:
        record.pid = pid
        _write_record(record_path, record)

    remaining = (record.fire_at - datetime.now(record.fire_at.tzinfo)).total_seconds()
    logger.info(f"Scheduler running in background, fires at {record.fire_at.isoformat()}")
    if remaining > 0:
        await asyncio.sleep(remaining)

    logger.info("Executing scheduled task...")
    executor = CommandExecutor(
        env_prefix=record.env_prefix,
        timeout_seconds=record.timeout_seconds,
    )
    result = await executor.execute(record.command, record.context)
    logger.info(f"Task completed with code: {result.exit_code}")

    try:
        record_path.unlink()
    except OSError as e:
        logger.warning(f"Could not remove one-shot record {record_path}: {e}")

    return result.exit_status


def main(argv: list[str] | None = None) -> int:
    """Worker process entry point."""
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s[%(process)d]: %(message)s",
    )

    if len(argv) != 1:
        logger.error("usage: python -m cadence.jobs.worker <record.json>")
        return 2

    record_path = Path(argv[0])
    try:
        return asyncio.run(run_record(record_path, pid=os.getpid()))
    except (OSError, PydanticValidationError) as e:
        logger.error(f"Cannot run one-shot record {record_path}: {e}")
        return 1

"""Command dispatch for scheduled jobs.

This module runs a job's command as a child process with the job's
context exposed as environment variables, and reports the exit status.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from cadence.jobs.types import ContextValue

logger = logging.getLogger(__name__)

DEFAULT_ENV_PREFIX = "JOB_"

# Conventional shell exit codes
EXIT_TIMEOUT = 124
EXIT_LAUNCH_FAILED = 127


@dataclass
class ExecutionResult:
    """Result of dispatching a command.

    Attributes:
        exit_code: Process exit code (negative N when killed by signal N),
            or a conventional code for timeouts (124) and launch
            failures (127).
        success: Whether the command exited with status 0.
        error: Error message on failure.
        duration_ms: Execution duration in milliseconds.
    """

    exit_code: int
    success: bool
    error: str | None = None
    duration_ms: float = 0

    @property
    def exit_status(self) -> int:
        """Exit status in shell form: 128 + N for a command killed by signal N."""
        if self.exit_code < 0:
            return 128 - self.exit_code
        return self.exit_code


def format_context_value(value: ContextValue) -> str:
    """Convert a context value to its environment string form."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def context_env_name(key: str, prefix: str = DEFAULT_ENV_PREFIX) -> str:
    """Map a context key to its environment variable name.

    Example:
        context_env_name("report-date") == "JOB_REPORT_DATE"
    """
    return prefix + re.sub(r"[^A-Za-z0-9_]", "_", key).upper()


def build_environment(
    context: Mapping[str, ContextValue] | None,
    prefix: str = DEFAULT_ENV_PREFIX,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Overlay context entries onto a base environment.

    Args:
        context: Job context values.
        prefix: Prefix marking injected variables.
        base: Environment to start from (defaults to os.environ).

    Returns:
        The merged environment.
    """
    env = dict(os.environ if base is None else base)
    for key, value in (context or {}).items():
        env[context_env_name(key, prefix)] = format_context_value(value)
    return env


class CommandExecutor:
    """Runs job commands through the platform shell.

    The child inherits this process's standard streams. Commands are
    never retried here.

    Example:
        executor = CommandExecutor(timeout_seconds=300)
        result = await executor.execute("./backup.sh", {"target": "s3"})
    """

    def __init__(
        self,
        env_prefix: str = DEFAULT_ENV_PREFIX,
        timeout_seconds: float | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            env_prefix: Prefix for context environment variables.
            timeout_seconds: Kill the command after this many seconds.
                None lets it run indefinitely.
        """
        self._env_prefix = env_prefix
        self._timeout = timeout_seconds

    @property
    def env_prefix(self) -> str:
        return self._env_prefix

    @property
    def timeout_seconds(self) -> float | None:
        return self._timeout

    async def execute(
        self,
        command: str,
        context: Mapping[str, ContextValue] | None = None,
    ) -> ExecutionResult:
        """Run a command and wait for it to exit.

        Args:
            command: Shell command line.
            context: Values exposed as prefixed environment variables.

        Returns:
            Execution result.
        """
        start_time = datetime.now(timezone.utc)
        env = build_environment(context, self._env_prefix)

        logger.info(f"Dispatching: {command}")

        try:
            process = await asyncio.create_subprocess_shell(command, env=env)
        except OSError as e:
            logger.error(f"Failed to launch command: {command} ({e})")
            return ExecutionResult(
                exit_code=EXIT_LAUNCH_FAILED,
                success=False,
                error=f"Failed to launch: {e}",
                duration_ms=_elapsed_ms(start_time),
            )

        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=self._timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"Command timed out after {self._timeout} seconds: {command}")
            return ExecutionResult(
                exit_code=EXIT_TIMEOUT,
                success=False,
                error=f"Timed out after {self._timeout} seconds",
                duration_ms=_elapsed_ms(start_time),
            )

        duration_ms = _elapsed_ms(start_time)

        if exit_code == 0:
            logger.info(f"Command completed in {duration_ms:.0f}ms: {command}")
            return ExecutionResult(exit_code=0, success=True, duration_ms=duration_ms)

        logger.warning(f"Command exited with code {exit_code}: {command}")
        return ExecutionResult(
            exit_code=exit_code,
            success=False,
            error=f"Exited with code {exit_code}",
            duration_ms=duration_ms,
        )


def _elapsed_ms(start_time: datetime) -> float:
    return (datetime.now(timezone.utc) - start_time).total_seconds() * 1000

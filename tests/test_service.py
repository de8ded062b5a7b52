"""Tests for the scheduler engine."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

import pytest
from filelock import FileLock

from cadence.config import Settings
from cadence.jobs.clock import FixedClock
from cadence.jobs.errors import (
    JobAlreadyRunning,
    JobDisabledError,
    JobNotFound,
    JobValidationError,
    MissingFieldError,
    UnparsableExpression,
)
from cadence.jobs.executor import CommandExecutor, ExecutionResult
from cadence.jobs.service import JobScheduler
from cadence.jobs.storage import JobStore
from cadence.jobs.types import Frequency, Job, JobCreate


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class _FakeExecutor(CommandExecutor):
    """Executor that records calls instead of spawning processes."""

    def __init__(self, exit_code: int = 0) -> None:
        super().__init__()
        self.exit_code = exit_code
        self.calls: list[tuple[str, dict]] = []
        self.on_execute = None

    async def execute(self, command, context=None) -> ExecutionResult:
        self.calls.append((command, dict(context or {})))
        if self.on_execute is not None:
            await self.on_execute()
        if self.exit_code == 0:
            return ExecutionResult(exit_code=0, success=True)
        return ExecutionResult(
            exit_code=self.exit_code,
            success=False,
            error=f"Exited with code {self.exit_code}",
        )


@pytest.fixture
def clock() -> FixedClock:
    # Monday
    return FixedClock(_utc(2024, 1, 15, 15, 0))


@pytest.fixture
def executor() -> _FakeExecutor:
    return _FakeExecutor()


@pytest.fixture
def scheduler(tmp_path, clock, executor) -> JobScheduler:
    return JobScheduler(
        JobStore(tmp_path / "jobs.json"),
        executor=executor,
        clock=clock,
        runtime_dir=tmp_path / "run",
    )


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestSchedule:
    def test_daily_rolls_to_tomorrow(self, scheduler) -> None:
        job = scheduler.schedule(
            name="daily-report", command="./report.sh", frequency="daily", time="14:30",
        )

        assert job.next_run == _utc(2024, 1, 16, 14, 30)
        assert job.created_at == _utc(2024, 1, 15, 15, 0)
        assert job.enabled is True
        assert job.last_run is None
        assert job.id.startswith("job_")
        assert scheduler.get_job(job.id).next_run == job.next_run

    def test_weekly_same_day_passed_is_next_week(self, scheduler, clock) -> None:
        clock.set(_utc(2024, 1, 15, 10, 0))
        job = scheduler.schedule(
            name="standup", command="true", frequency="weekly", weekday="monday", time="09:00",
        )

        assert job.next_run == _utc(2024, 1, 22, 9, 0)

    def test_schedule_job_model(self, scheduler) -> None:
        job = scheduler.schedule_job(JobCreate(
            name="close books",
            command="./close.sh",
            frequency=Frequency.MONTHLY,
            day_of_month=31,
            time="23:00",
            context={"ledger": "main"},
        ))

        assert job.next_run == _utc(2024, 1, 31, 23, 0)
        assert job.context == {"ledger": "main"}

    def test_monthly_during_dst_fall_back_is_not_overdue(self, scheduler, clock) -> None:
        new_york = ZoneInfo("America/New_York")
        now = datetime(2024, 11, 3, 1, 20, fold=1, tzinfo=new_york)
        clock.set(now)

        job = scheduler.schedule(
            name="night batch", command="true", frequency="monthly", day_of_month=3, time="01:30",
        )

        assert job.next_run.astimezone(timezone.utc) > now.astimezone(timezone.utc)
        assert not scheduler.get_job(job.id).is_due(now)

    def test_is_due_compares_instants_across_fall_back(self) -> None:
        new_york = ZoneInfo("America/New_York")
        job = Job(
            id="job_dst",
            name="dst",
            command="true",
            frequency=Frequency.DAILY,
            time="01:30",
            created_at=_utc(2024, 11, 1, 0, 0),
            # First 01:30 of the day, still EDT (05:30 UTC)
            next_run=datetime(2024, 11, 3, 1, 30, tzinfo=new_york),
        )

        # Second 01:20 of the day, EST (06:20 UTC)
        assert job.is_due(datetime(2024, 11, 3, 1, 20, fold=1, tzinfo=new_york))
        assert not job.is_due(datetime(2024, 11, 3, 1, 20, tzinfo=new_york))

    def test_ids_are_unique(self, scheduler) -> None:
        ids = {
            scheduler.schedule(name=f"job {i}", command="true", frequency="hourly").id
            for i in range(20)
        }
        assert len(ids) == 20

    def test_missing_field_rejected_without_mutation(self, scheduler) -> None:
        with pytest.raises(MissingFieldError):
            scheduler.schedule(name="x", command="true", frequency="weekly", time="09:00")

        assert scheduler.list_jobs() == []

    @pytest.mark.parametrize("fields", [
        {"frequency": "daily", "time": "25:00"},
        {"frequency": "fortnightly"},
        {"frequency": "monthly", "time": "09:00", "day_of_month": 32},
        {"frequency": "weekly", "time": "09:00", "weekday": "someday"},
        {"frequency": "once", "time": "09:00", "date": "2024-13-01"},
    ])
    def test_malformed_fields_rejected(self, scheduler, fields) -> None:
        with pytest.raises(JobValidationError):
            scheduler.schedule(name="x", command="true", **fields)

        assert scheduler.list_jobs() == []

    def test_empty_name_rejected(self, scheduler) -> None:
        with pytest.raises(JobValidationError):
            scheduler.schedule(name="", command="true", frequency="hourly")

    def test_once_in_the_past_rejected(self, scheduler) -> None:
        with pytest.raises(JobValidationError, match="in the past"):
            scheduler.schedule(
                name="late", command="true", frequency="once", date="2024-01-15", time="14:00",
            )

        assert scheduler.list_jobs() == []

    def test_remove_and_clear(self, scheduler) -> None:
        first = scheduler.schedule(name="a", command="true", frequency="hourly")
        scheduler.schedule(name="b", command="true", frequency="hourly")

        assert scheduler.remove_job(first.id).name == "a"
        with pytest.raises(JobNotFound):
            scheduler.remove_job(first.id)
        assert scheduler.clear_jobs() == 1
        assert scheduler.list_jobs() == []


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


class TestRunJob:
    @pytest.mark.asyncio
    async def test_recurring_success_rolls_forward(self, scheduler, clock, executor) -> None:
        job = scheduler.schedule(
            name="daily-report", command="./report.sh", frequency="daily", time="14:30",
            context={"region": "eu"},
        )
        clock.set(_utc(2024, 1, 16, 14, 30, 5))

        result = await scheduler.run_job(job.id)

        assert result.success is True
        assert executor.calls == [("./report.sh", {"region": "eu"})]
        stored = scheduler.get_job(job.id)
        assert stored.last_run == _utc(2024, 1, 16, 14, 30, 5)
        assert stored.next_run == _utc(2024, 1, 17, 14, 30)
        assert stored.enabled is True

    @pytest.mark.asyncio
    async def test_once_job_retires_after_one_success(self, scheduler, clock, executor) -> None:
        job = scheduler.schedule(
            name="reminder", command="true", frequency="once", date="2024-01-20", time="09:00",
        )
        clock.set(_utc(2024, 1, 20, 9, 0, 1))

        result = await scheduler.run_job(job.id)

        assert result.success is True
        stored = scheduler.get_job(job.id)
        assert stored.enabled is False
        assert stored.next_run == _utc(2024, 1, 20, 9, 0)
        assert stored.last_run == _utc(2024, 1, 20, 9, 0, 1)

        with pytest.raises(JobDisabledError):
            await scheduler.run_job(job.id)
        assert len(executor.calls) == 1

        clock.advance(timedelta(days=30))
        assert await scheduler.run_due_jobs() == []
        assert scheduler.get_job(job.id).next_run == _utc(2024, 1, 20, 9, 0)

    @pytest.mark.asyncio
    async def test_failure_leaves_job_unchanged(self, scheduler, clock, executor) -> None:
        job = scheduler.schedule(name="flaky", command="false", frequency="hourly")
        before = scheduler.get_job(job.id)
        executor.exit_code = 2
        clock.advance(timedelta(hours=2))

        result = await scheduler.run_job(job.id)

        assert result.success is False
        assert result.exit_code == 2
        assert scheduler.get_job(job.id) == before

    @pytest.mark.asyncio
    async def test_failed_once_job_stays_enabled(self, scheduler, clock, executor) -> None:
        job = scheduler.schedule(
            name="reminder", command="false", frequency="once", date="2024-01-20", time="09:00",
        )
        executor.exit_code = 1
        clock.set(_utc(2024, 1, 20, 9, 0, 1))

        await scheduler.run_job(job.id)

        stored = scheduler.get_job(job.id)
        assert stored.enabled is True
        assert stored.last_run is None

    @pytest.mark.asyncio
    async def test_unknown_job(self, scheduler) -> None:
        with pytest.raises(JobNotFound):
            await scheduler.run_job("job_missing")

    @pytest.mark.asyncio
    async def test_second_run_in_flight_is_refused(self, scheduler, executor) -> None:
        job = scheduler.schedule(name="slow", command="true", frequency="hourly")
        started = asyncio.Event()
        release = asyncio.Event()

        async def block() -> None:
            started.set()
            await release.wait()

        executor.on_execute = block
        first = asyncio.create_task(scheduler.run_job(job.id))
        await started.wait()

        with pytest.raises(JobAlreadyRunning):
            await scheduler.run_job(job.id)

        release.set()
        result = await first
        assert result.success is True
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_run_lock_held_by_another_process(self, scheduler, tmp_path, executor) -> None:
        job = scheduler.schedule(name="busy", command="true", frequency="hourly")
        (tmp_path / "run").mkdir(exist_ok=True)
        other = FileLock(str(tmp_path / "run" / f"{job.id}.run.lock"))

        with other:
            with pytest.raises(JobAlreadyRunning):
                await scheduler.run_job(job.id)

        assert executor.calls == []
        await scheduler.run_job(job.id)
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_job_removed_while_running(self, scheduler, executor) -> None:
        job = scheduler.schedule(name="doomed", command="true", frequency="hourly")

        async def remove() -> None:
            scheduler.remove_job(job.id)

        executor.on_execute = remove
        result = await scheduler.run_job(job.id)

        assert result.success is True
        assert scheduler.list_jobs() == []

    @pytest.mark.asyncio
    async def test_other_jobs_updated_meanwhile_are_kept(self, scheduler, executor) -> None:
        job = scheduler.schedule(name="main", command="true", frequency="hourly")

        async def add_other() -> None:
            scheduler.schedule(name="added", command="true", frequency="hourly")

        executor.on_execute = add_other
        await scheduler.run_job(job.id)

        assert [j.name for j in scheduler.list_jobs()] == ["main", "added"]


class TestRunDueJobs:
    @pytest.mark.asyncio
    async def test_runs_only_due_jobs(self, scheduler, clock, executor) -> None:
        soon = scheduler.schedule(name="soon", command="echo soon", frequency="hourly")
        scheduler.schedule(name="later", command="echo later", frequency="daily", time="14:00")
        clock.set(_utc(2024, 1, 15, 16, 0))

        results = await scheduler.run_due_jobs()

        assert [(job.id, result.success) for job, result in results] == [(soon.id, True)]
        assert executor.calls == [("echo soon", {})]
        assert scheduler.get_job(soon.id).next_run == _utc(2024, 1, 15, 17, 0)

    @pytest.mark.asyncio
    async def test_failed_job_is_retried_next_check(self, scheduler, clock, executor) -> None:
        job = scheduler.schedule(name="flaky", command="false", frequency="hourly")
        executor.exit_code = 1
        clock.set(_utc(2024, 1, 15, 16, 0))

        await scheduler.run_due_jobs()
        executor.exit_code = 0
        clock.advance(timedelta(minutes=1))
        results = await scheduler.run_due_jobs()

        assert [r.success for _, r in results] == [True]
        assert len(executor.calls) == 2
        assert scheduler.get_job(job.id).next_run == _utc(2024, 1, 15, 17, 0)

    @pytest.mark.asyncio
    async def test_nothing_due(self, scheduler) -> None:
        scheduler.schedule(name="later", command="true", frequency="hourly")
        assert await scheduler.run_due_jobs() == []


# ---------------------------------------------------------------------------
# One-shots
# ---------------------------------------------------------------------------


class TestScheduleOnce:
    def test_launches_detached_worker(self, scheduler, tmp_path, clock) -> None:
        process = MagicMock(pid=4242)
        with patch("cadence.jobs.detached.subprocess.Popen", return_value=process) as popen:
            handle = scheduler.schedule_once("say hello", "5 minutes", context={"voice": "rachel"})

        assert handle.pid == 4242
        assert handle.fire_at == clock.now() + timedelta(minutes=5)
        assert popen.call_args.kwargs["start_new_session"] is True

        record = json.loads(handle.record_path.read_text())
        assert record["command"] == "say hello"
        assert record["context"] == {"voice": "rachel"}

        pending = scheduler.pending_one_shots()
        assert [path for path, _ in pending] == [handle.record_path]

    def test_clock_time(self, scheduler, clock) -> None:
        with patch("cadence.jobs.detached.subprocess.Popen", return_value=MagicMock(pid=1)):
            handle = scheduler.schedule_once("true", "3:30pm")

        # 15:30 has not passed at 15:00
        assert handle.fire_at == _utc(2024, 1, 15, 15, 30)

    def test_unparsable_expression(self, scheduler) -> None:
        with patch("cadence.jobs.detached.subprocess.Popen") as popen:
            with pytest.raises(UnparsableExpression):
                scheduler.schedule_once("true", "whenever")

        popen.assert_not_called()
        assert scheduler.pending_one_shots() == []


class TestFromSettings:
    def test_wires_collaborators(self, tmp_path) -> None:
        config = Settings(
            data_dir=tmp_path,
            timezone="UTC",
            dispatch_timeout_seconds=30,
            context_env_prefix="CTX_",
        )
        scheduler = JobScheduler.from_settings(config)

        assert scheduler.store.path == tmp_path / "jobs.json"
        assert scheduler.runtime_dir == tmp_path / "run"
        assert scheduler._executor.timeout_seconds == 30
        assert scheduler._executor.env_prefix == "CTX_"
        assert isinstance(scheduler.list_jobs(), list)

"""Command-line interface for cadence.

CONCEPTS:
---------
- JOB:      A command stored with a cadence (once, hourly, daily, weekly,
            monthly). Jobs are persisted and run when an external trigger
            calls `cadence due`, or on demand with `cadence run`.

- ONE-SHOT: A command run once after a delay ("5 minutes", "3:30pm") by a
            background process that outlives this one. Not persisted as a job.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cadence import __version__
from cadence.config import settings
from cadence.jobs import (
    Frequency,
    JobScheduler,
    SchedulerError,
    cadence_description,
)
from cadence.jobs.types import ContextValue

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.WARNING
    fmt = "%(name)s: %(message)s" if verbose else "%(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[RichHandler(rich_tracebacks=True, console=console, show_path=verbose)],
    )


def _scheduler() -> JobScheduler:
    return JobScheduler.from_settings(settings)


def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def parse_context_value(raw: str) -> ContextValue:
    """Parse a context value given on the command line.

    "true"/"false" become booleans, numeric strings become numbers and
    anything else stays a string.
    """
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for convert in (int, float):
        try:
            return convert(raw)
        except ValueError:
            pass
    return raw


def parse_context(pairs: list[str] | None) -> dict[str, ContextValue]:
    """Parse KEY=VALUE pairs into a context mapping.

    Raises:
        ValueError: If a pair has no '=' or an empty key.
    """
    context: dict[str, ContextValue] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid context entry (expected KEY=VALUE): {pair}")
        context[key.strip()] = parse_context_value(value)
    return context


def _yaml_time(value) -> str | None:
    """Normalize a YAML time value.

    YAML 1.1 reads an unquoted 14:30 as the base-60 integer 870.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return f"{value // 60:02d}:{value % 60:02d}"
    return str(value)


def cmd_schedule(args: argparse.Namespace) -> None:
    """Schedule a new job."""
    try:
        context = parse_context(args.context)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    job = _scheduler().schedule(
        name=args.name,
        command=args.command,
        frequency=args.frequency,
        time=args.time,
        date=args.date,
        weekday=args.weekday,
        day_of_month=args.day_of_month,
        context=context,
    )

    console.print(f"[green]Scheduled job:[/green] {job.name}")
    console.print(f"  ID: {job.id}")
    console.print(f"  Schedule: {cadence_description(job.cadence)}")
    console.print(f"  Next run: {job.next_run.isoformat()}")


def cmd_list(args: argparse.Namespace) -> None:
    """List all scheduled jobs."""
    jobs = _scheduler().list_jobs()

    if not jobs:
        console.print("[yellow]No scheduled jobs.[/yellow]")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Schedule", style="yellow")
    table.add_column("Command", style="white")
    table.add_column("Enabled", style="green")
    table.add_column("Next Run", style="blue")
    table.add_column("Last Run", style="magenta")

    for job in jobs:
        table.add_row(
            job.id,
            job.name,
            cadence_description(job.cadence),
            job.command,
            "Yes" if job.enabled else "No",
            _format_time(job.next_run) if job.enabled else "-",
            _format_time(job.last_run),
        )

    console.print(table)


def cmd_remove(args: argparse.Namespace) -> None:
    """Remove a scheduled job."""
    job = _scheduler().remove_job(args.job_id)
    console.print(f"[green]Removed:[/green] {job.name}")


def cmd_run(args: argparse.Namespace) -> None:
    """Run a scheduled job immediately."""
    scheduler = _scheduler()
    job = scheduler.get_job(args.job_id)

    console.print(f"Running: {job.name}")
    result = asyncio.run(scheduler.run_job(args.job_id))

    if result.success:
        console.print(f"[green]Completed[/green] in {result.duration_ms:.0f}ms")
    else:
        console.print(f"[red]Failed:[/red] {result.error}")
        sys.exit(result.exit_status or 1)


def cmd_due(args: argparse.Namespace) -> None:
    """Run every job whose next run has arrived."""
    results = asyncio.run(_scheduler().run_due_jobs())

    if not results:
        if not args.quiet:
            console.print("[dim]No jobs due.[/dim]")
        return

    failed = 0
    for job, result in results:
        if result.success:
            console.print(f"[green]Completed:[/green] {job.name} ({job.id})")
        else:
            failed += 1
            console.print(f"[red]Failed:[/red] {job.name} ({job.id}) - {result.error}")

    if failed:
        sys.exit(1)


def cmd_clear(args: argparse.Namespace) -> None:
    """Clear all scheduled jobs."""
    scheduler = _scheduler()
    jobs = scheduler.list_jobs()

    if not jobs:
        console.print("[yellow]No jobs to clear[/yellow]")
        return

    if not args.yes:
        console.print(f"[yellow]This will delete {len(jobs)} jobs.[/yellow]")
        response = console.input("Continue? [y/N]: ").strip().lower()
        if response != "y":
            console.print("[dim]Aborted[/dim]")
            return

    count = scheduler.clear_jobs()
    console.print(f"[green]Cleared {count} jobs[/green]")


def cmd_at(args: argparse.Namespace) -> None:
    """Run a command once after a delay, in the background."""
    try:
        context = parse_context(args.context)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    handle = _scheduler().schedule_once(args.command, args.when, context=context)

    console.print(f"[green]Task scheduled for:[/green] {handle.fire_at.strftime('%Y-%m-%d %H:%M:%S')}")
    console.print(f"[green]Background scheduler started[/green] (PID: {handle.pid})")
    console.print("[dim]You can close this terminal - the task will still run.[/dim]")


def cmd_pending(args: argparse.Namespace) -> None:
    """List one-shots that have not fired yet."""
    pending = _scheduler().pending_one_shots()

    if not pending:
        console.print("[yellow]No pending one-shots.[/yellow]")
        return

    table = Table(title="Pending One-Shots")
    table.add_column("Fires At", style="blue")
    table.add_column("Command", style="white")
    table.add_column("PID", style="magenta")
    table.add_column("Record", style="dim")

    for path, record in pending:
        table.add_row(
            record.fire_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.command,
            str(record.pid) if record.pid else "-",
            path.name,
        )

    console.print(table)


def cmd_import(args: argparse.Namespace) -> None:
    """Schedule jobs from a YAML configuration file."""
    path = Path(args.file)
    if not path.exists():
        console.print(f"[red]File not found:[/red] {path}")
        sys.exit(1)

    try:
        config = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        console.print(f"[red]Invalid YAML:[/red] {e}")
        sys.exit(1)

    job_configs = config.get("jobs", []) if isinstance(config, dict) else []
    if not job_configs:
        console.print("[yellow]No jobs found in file[/yellow]")
        return

    scheduler = _scheduler()
    if args.replace:
        count = scheduler.clear_jobs()
        console.print(f"[dim]Cleared {count} existing jobs[/dim]")

    imported = 0
    for job_config in job_configs:
        name = job_config.get("name", "unnamed")
        date = job_config.get("date")
        try:
            job = scheduler.schedule(
                name=name,
                command=job_config.get("command", ""),
                frequency=job_config.get("frequency", ""),
                time=_yaml_time(job_config.get("time")),
                date=str(date) if date is not None else None,
                weekday=job_config.get("weekday"),
                day_of_month=job_config.get("day_of_month", job_config.get("dayOfMonth")),
                context=job_config.get("context") or {},
            )
        except SchedulerError as e:
            console.print(f"[red]Skipping '{name}':[/red] {e}")
            continue

        imported += 1
        console.print(f"  [green]+[/green] {job.name} ({cadence_description(job.cadence)})")

    console.print(f"\n[bold]Imported {imported} jobs[/bold]")


def cmd_version(args: argparse.Namespace) -> None:
    """Show version information."""
    console.print(f"cadence v{__version__}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="cadence",
        description="Schedule recurring commands and run them when they are due.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command_name", metavar="COMMAND")

    # schedule
    schedule_parser = subparsers.add_parser("schedule", help="Create a new scheduled job")
    schedule_parser.add_argument("--name", required=True, help="Job name")
    schedule_parser.add_argument("--command", required=True, help="Command to run")
    schedule_parser.add_argument(
        "--frequency",
        required=True,
        choices=[f.value for f in Frequency],
        help="How often the job runs",
    )
    schedule_parser.add_argument("--time", help="Time of day, HH:MM (daily, weekly, monthly, once)")
    schedule_parser.add_argument("--date", help="Date, YYYY-MM-DD (once)")
    schedule_parser.add_argument("--weekday", help="Day of the week, e.g. monday (weekly)")
    schedule_parser.add_argument(
        "--day-of-month", type=int, dest="day_of_month",
        help="Day of the month, 1-31 (monthly; clamped to the month's last day)",
    )
    schedule_parser.add_argument(
        "--context", action="append", metavar="KEY=VALUE",
        help="Value exposed to the command as JOB_<KEY> (repeatable)",
    )
    schedule_parser.set_defaults(func=cmd_schedule)

    # list
    list_parser = subparsers.add_parser("list", help="List scheduled jobs")
    list_parser.set_defaults(func=cmd_list)

    # remove
    remove_parser = subparsers.add_parser("remove", help="Remove a job")
    remove_parser.add_argument("job_id", help="Job ID")
    remove_parser.set_defaults(func=cmd_remove)

    # run
    run_parser = subparsers.add_parser("run", help="Run a job immediately")
    run_parser.add_argument("job_id", help="Job ID")
    run_parser.set_defaults(func=cmd_run)

    # due
    due_parser = subparsers.add_parser(
        "due",
        help="Run all jobs that are due",
        description="Run every enabled job whose next run has arrived. "
                    "Meant to be invoked periodically by cron or a systemd timer.",
    )
    due_parser.add_argument("-q", "--quiet", action="store_true", help="No output when nothing is due")
    due_parser.set_defaults(func=cmd_due)

    # clear
    clear_parser = subparsers.add_parser("clear", help="Clear all scheduled jobs")
    clear_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    clear_parser.set_defaults(func=cmd_clear)

    # at
    at_parser = subparsers.add_parser(
        "at",
        help="Run a command once after a delay",
        description="Run a command once in the background. WHEN is e.g. "
                    "'10 seconds', '5 minutes', '2 hours', 'now' or '3:30pm'.",
    )
    at_parser.add_argument("when", help="When to execute")
    at_parser.add_argument("command", help="Command to run")
    at_parser.add_argument(
        "--context", action="append", metavar="KEY=VALUE",
        help="Value exposed to the command as JOB_<KEY> (repeatable)",
    )
    at_parser.set_defaults(func=cmd_at)

    # pending
    pending_parser = subparsers.add_parser("pending", help="List one-shots waiting to fire")
    pending_parser.set_defaults(func=cmd_pending)

    # import
    import_parser = subparsers.add_parser(
        "import",
        help="Schedule jobs from a YAML file",
        epilog="""YAML file format:
  jobs:
    - name: "Daily report"
      command: "./report.sh"
      frequency: daily
      time: "14:30"
      context:
        region: eu

    - name: "Month end"
      command: "./close-books.sh"
      frequency: monthly
      day_of_month: 31
      time: "23:00"
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    import_parser.add_argument("file", help="Path to YAML configuration file")
    import_parser.add_argument(
        "--replace", action="store_true", help="Clear existing jobs before importing"
    )
    import_parser.set_defaults(func=cmd_import)

    # version
    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the cadence CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose)

    if args.command_name is None:
        parser.print_help()
        sys.exit(0)

    try:
        args.func(args)
    except SchedulerError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()

"""matrixrun status command."""

from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from matrixrun.config import get_db_path, require_matrixrun_dir
from matrixrun.db import get_build, get_build_jobs, get_builds, get_connection
from matrixrun.models.db import BuildRecord, JobRecord

console = Console()

JOB_STATUS_STYLES = {
    "queued": "yellow",
    "running": "blue",
    "completed": "green",
    "cancelled": "dim",
}


def format_duration(started_at: Optional[str], finished_at: Optional[str] = None) -> str:
    """Format duration from started_at to now or finished_at."""
    if not started_at:
        return "-"

    try:
        start = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
        end = datetime.now(timezone.utc)
        if finished_at:
            end = datetime.fromisoformat(finished_at.replace("Z", "+00:00"))

        total_seconds = int((end - start).total_seconds())

        if total_seconds < 60:
            return f"{total_seconds}s"
        elif total_seconds < 3600:
            minutes = total_seconds // 60
            seconds = total_seconds % 60
            return f"{minutes}m {seconds}s"
        else:
            hours = total_seconds // 3600
            minutes = (total_seconds % 3600) // 60
            return f"{hours}h {minutes}m"
    except ValueError:
        return "-"


def status(
    build_number: Optional[int] = typer.Argument(
        None,
        help="Build number to show sub-jobs for",
    ),
    limit: int = typer.Option(
        20,
        "--limit", "-n",
        help="Number of builds to list",
    ),
) -> None:
    """
    Show build status.

    Without arguments, lists recent builds.
    With a build number, shows every sub-job of that build.
    """
    try:
        matrixrun_dir = require_matrixrun_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    db_path = get_db_path(matrixrun_dir)
    conn = get_connection(db_path)

    try:
        if build_number is not None:
            record = get_build(conn, build_number)
            if record is None:
                console.print(f"[red]Error:[/red] Build #{build_number} not found")
                raise typer.Exit(1)
            _show_build_details(record, get_build_jobs(conn, build_number))
        else:
            _show_build_table(get_builds(conn, limit=limit))
    finally:
        conn.close()


def _result_cell(record: BuildRecord | JobRecord) -> str:
    if record.result is None:
        return "-"
    style = record.result.style
    return f"[{style}]{record.result}[/{style}]"


def _show_build_table(builds: list[BuildRecord]) -> None:
    if not builds:
        console.print("[dim]No builds yet[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim")
    table.add_column("Project")
    table.add_column("Status")
    table.add_column("Result")
    table.add_column("Duration")

    for record in builds:
        status_text = record.status
        if record.status == "building" and record.interrupt_requested_at:
            status_text = "[yellow]aborting[/yellow]"
        table.add_row(
            str(record.number),
            record.project,
            status_text,
            _result_cell(record),
            format_duration(record.started_at, record.finished_at),
        )

    console.print(table)


def _show_build_details(record: BuildRecord, jobs: list[JobRecord]) -> None:
    console.print(f"\n[bold]Build #{record.number}[/bold] ({record.project})")
    console.print(f"  [dim]status:[/dim] {record.status}")
    console.print(f"  [dim]result:[/dim] {_result_cell(record)}")
    console.print(f"  [dim]duration:[/dim] {format_duration(record.started_at, record.finished_at)}")
    if record.parameters:
        params = ", ".join(f"{k}={v}" for k, v in record.parameters.items())
        console.print(f"  [dim]parameters:[/dim] {params}")
    if record.only:
        console.print(f"  [dim]only:[/dim] {'; '.join(record.only)}")
    if record.base_build is not None:
        console.print(f"  [dim]reuses:[/dim] build #{record.base_build}")
    if record.interrupt_cause:
        console.print(f"  [dim]interrupted:[/dim] {record.interrupt_cause}")

    if not jobs:
        console.print("\n[dim]No sub-jobs[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Job", style="dim")
    table.add_column("Configuration")
    table.add_column("Status")
    table.add_column("Result")
    table.add_column("Worker")
    table.add_column("Runtime")

    for job in jobs:
        style = JOB_STATUS_STYLES.get(job.status, "white")
        table.add_row(
            str(job.id),
            job.combination,
            f"[{style}]{job.status}[/{style}]",
            _result_cell(job),
            job.worker_id or "-",
            format_duration(job.started_at, job.finished_at),
        )

    console.print()
    console.print(table)

# Copyright (c) Syntropy Systems
"""matrixrun build command."""
from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from matrixrun.build import BuildExecution, MatrixBuild
from matrixrun.config import get_db_path, load_config, require_matrixrun_dir
from matrixrun.db import get_build, get_connection
from matrixrun.errors import AbortError
from matrixrun.project import MatrixProject
from matrixrun.queue import JobQueue
from matrixrun.result import Result

console = Console()


def _parse_params(params: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for param in params:
        name, sep, value = param.partition("=")
        if not sep or not name.strip():
            msg = f"Invalid parameter '{param}': expected KEY=VALUE"
            raise ValueError(msg)
        parsed[name.strip()] = value
    return parsed


def build(
    matrix_file: Path = typer.Argument(
        ...,
        help="Path to the matrix definition YAML file",
        exists=True,
    ),
    param: Optional[list[str]] = typer.Option(
        None,
        "--param", "-p",
        help="Build parameter passed to every sub-job (KEY=VALUE, repeatable)",
    ),
    only: Optional[list[str]] = typer.Option(
        None,
        "--only", "-o",
        help="Rebuild only this combination, e.g. os=linux,python=3.12 (repeatable)",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout", "-t",
        help="Abort the build after this many seconds",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run", "-n",
        help="Show how the configurations would be partitioned without running them",
    ),
) -> None:
    r"""Run one matrix build in the foreground.

    Sub-jobs are queued for `matrixrun worker` processes to pick up.

    Example matrix.yaml:

    \b
        name: kitchen
        program: python run_suite.py
        axes:
          os: [linux, windows]
          python: ["3.11", "3.12"]
        strategy:
          touchstone_filter: os == "linux"
          touchstone_result_threshold: unstable
    """
    try:
        matrixrun_dir = require_matrixrun_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    config = load_config(matrixrun_dir)

    try:
        project = MatrixProject.load(matrix_file, config)
        parameters = _parse_params(param or [])
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading matrix:[/red] {e}")
        raise typer.Exit(1) from e

    db_path = get_db_path(matrixrun_dir)
    conn = get_connection(db_path)

    try:
        try:
            matrix_build = MatrixBuild(project, conn, console, parameters=parameters, only=only)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e

        if dry_run:
            _show_partition(project, matrix_build, JobQueue(conn))
            return

        result = _run_build(matrix_build, db_path, timeout)
    finally:
        conn.close()

    if result.is_worse_than(Result.UNSTABLE):
        raise typer.Exit(1)


def _run_build(matrix_build: MatrixBuild, db_path: Path, timeout: Optional[float]) -> Result:
    """Execute the build with signal, timeout and remote-cancel handling."""
    number = matrix_build.start()
    console.print(f"[dim]Build #{number} - cancel with: matrixrun cancel {number}[/dim]")

    def _on_signal(signum, frame):
        console.print("\n[yellow]Interrupt received, aborting build...[/yellow]")
        matrix_build.interrupt("Aborted by user")

    previous_int = signal.signal(signal.SIGINT, _on_signal)
    previous_term = signal.signal(signal.SIGTERM, _on_signal)

    timer = None
    if timeout is not None:
        timer = threading.Timer(
            timeout,
            matrix_build.interrupt,
            kwargs={"cause": f"Timed out after {timeout:g}s", "result": Result.ABORTED},
        )
        timer.daemon = True
        timer.start()

    # Watch for `matrixrun cancel`
    watcher_stop = threading.Event()

    def cancel_watcher():
        while not watcher_stop.is_set():
            try:
                conn = get_connection(db_path)
                try:
                    record = get_build(conn, number)
                finally:
                    conn.close()
                if record is not None and record.interrupt_requested_at:
                    matrix_build.interrupt(record.interrupt_cause or "Cancelled")
                    return
            except Exception as e:  # noqa: BLE001
                console.print(f"[yellow]Warning:[/yellow] Cancel check failed: {e}")
            watcher_stop.wait(timeout=1.0)

    watcher = threading.Thread(target=cancel_watcher, daemon=True)
    watcher.start()

    try:
        return matrix_build.execute()
    finally:
        watcher_stop.set()
        watcher.join(timeout=2.0)
        if timer is not None:
            timer.cancel()
        signal.signal(signal.SIGINT, previous_int)
        signal.signal(signal.SIGTERM, previous_term)


def _show_partition(project: MatrixProject, matrix_build: MatrixBuild, queue: JobQueue) -> None:
    """Display the touchstone / delayed / skipped split."""
    execution = BuildExecution(
        number=0,
        project_name=project.name,
        active_configurations=project.active_configurations(queue),
        aggregators=[],
        log=console,
        queue=queue,
        combination_filter=project.combination_filter,
        should_build=matrix_build.should_build,
    )
    try:
        partition = project.strategy.partition(execution)
    except AbortError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    table = Table(title=f"Matrix: {project.name}")
    table.add_column("#", style="dim")
    table.add_column("Configuration")
    table.add_column("Phase")

    rows = (
        [(c, "[bold]touchstone[/bold]") for c in partition.touchstone]
        + [(c, "delayed") for c in partition.delayed]
        + [(c, "[dim]skipped[/dim]") for c in partition.skipped]
    )
    for i, (c, phase) in enumerate(rows):
        table.add_row(str(i), str(c.combination), phase)

    console.print(table)
    console.print(
        f"\n[bold]{len(partition.touchstone) + len(partition.delayed)} configurations[/bold] would run "
        f"({len(partition.touchstone)} touchstone, {len(partition.skipped)} skipped)"
    )
    console.print("\n[yellow]Dry run - nothing queued[/yellow]")

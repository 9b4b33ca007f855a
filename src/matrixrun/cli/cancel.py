# Copyright (c) Syntropy Systems
"""matrixrun cancel command."""
from __future__ import annotations

import typer
from rich.console import Console

from matrixrun.config import get_db_path, require_matrixrun_dir
from matrixrun.db import get_connection, request_build_interrupt

console = Console()


def cancel(
    build_number: int = typer.Argument(
        ...,
        help="Build number to abort",
    ),
    reason: str = typer.Option(
        "Aborted by operator",
        "--reason", "-r",
        help="Cause recorded on the build",
    ),
) -> None:
    """Abort a running matrix build.

    The build process notices the request within a second, cancels its
    queued sub-jobs and interrupts the running ones.
    """
    try:
        matrixrun_dir = require_matrixrun_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    db_path = get_db_path(matrixrun_dir)
    conn = get_connection(db_path)

    try:
        try:
            old_status = request_build_interrupt(conn, build_number, reason)
        except ValueError as e:
            console.print(f"[red]Error:[/red] Build #{build_number} not found")
            raise typer.Exit(1) from e

        if old_status == "building":
            console.print(f"[yellow]Abort requested for build #{build_number}[/yellow]")
            console.print("[dim]The build will stop its sub-jobs shortly[/dim]")
        else:
            console.print(f"[yellow]Build #{build_number} is already {old_status}[/yellow]")
    finally:
        conn.close()

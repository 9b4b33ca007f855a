# Copyright (c) Syntropy Systems
"""matrixrun worker command."""

from __future__ import annotations

import os
import signal
import socket
import time
from pathlib import Path
from threading import Event, Thread
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from matrixrun.config import (
    MatrixRunConfig,
    get_db_path,
    get_runs_dir,
    load_config,
    require_matrixrun_dir,
)
from matrixrun.db import (
    claim_job,
    complete_job,
    get_connection,
    register_worker,
    requeue_orphaned_jobs,
    unregister_worker,
    update_job_heartbeat,
    update_job_process_info,
    update_worker_status,
)
from matrixrun.models.db import JobRecord
from matrixrun.result import Result
from matrixrun.runner import SubJobRunner

console = Console()

# Shutdown event for graceful termination
_shutdown_event = Event()


def _signal_handler(signum, frame):
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    console.print("\n[yellow]Shutdown requested, finishing current sub-job...[/yellow]")
    _shutdown_event.set()


def worker(
    gpu: Optional[int] = typer.Option(
        None,
        "--gpu", "-g",
        help="GPU index to use (for multi-GPU setups)",
    ),
) -> None:
    """
    Start a worker that claims and runs sub-jobs from the queue.

    Examples:

        matrixrun worker

        matrixrun worker --gpu 0
    """
    try:
        matrixrun_dir = require_matrixrun_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    config = load_config(matrixrun_dir)
    db_path = get_db_path(matrixrun_dir)
    runs_dir = get_runs_dir(matrixrun_dir)

    hostname = socket.gethostname()
    pid = os.getpid()
    if gpu is not None:
        worker_id = f"{hostname}:gpu{gpu}"
        os.environ["CUDA_VISIBLE_DEVICES"] = str(gpu)
    else:
        worker_id = f"{hostname}:{pid}"

    conn = get_connection(db_path)
    try:
        register_worker(conn, worker_id, pid, hostname, gpu)

        # Requeued jobs show up as queue entries again for the waiting build
        orphaned = requeue_orphaned_jobs(conn, config.heartbeat_timeout)
        if orphaned:
            console.print(f"[yellow]Requeued {len(orphaned)} orphaned sub-job(s)[/yellow]")
            for job in orphaned:
                console.print(f"  - Job #{job.id}: {job.combination} (attempt {job.attempt + 1})")
    finally:
        conn.close()

    console.print(f"[green]Worker started:[/green] {worker_id}")
    console.print(f"[dim]Polling for sub-jobs every {config.poll_interval}s...[/dim]")

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        run_worker_loop(worker_id, db_path, runs_dir, config)
    finally:
        conn = get_connection(db_path)
        try:
            unregister_worker(conn, worker_id)
        finally:
            conn.close()
        console.print("[dim]Worker stopped[/dim]")


def run_worker_loop(
    worker_id: str,
    db_path: Path,
    runs_dir: Path,
    config: MatrixRunConfig,
    shutdown_event: Event = _shutdown_event,
    max_jobs: Optional[int] = None,
) -> int:
    """Claim and run sub-jobs until shutdown. Returns the number of jobs run."""
    jobs_run = 0
    while not shutdown_event.is_set():
        if max_jobs is not None and jobs_run >= max_jobs:
            break

        conn = get_connection(db_path)
        try:
            job = claim_job(conn, worker_id)
            if job:
                update_worker_status(conn, worker_id, "busy", job.id)
        finally:
            conn.close()

        if job is None:
            shutdown_event.wait(timeout=config.poll_interval)
            continue

        result = run_sub_job(job, db_path, runs_dir, config, shutdown_event)
        jobs_run += 1

        conn = get_connection(db_path)
        try:
            update_worker_status(conn, worker_id, "idle", None)
        finally:
            conn.close()

        style = result.style
        console.print(f"[{style}]Job #{job.id} {escape(job.combination)}: {result}[/{style}]")

    return jobs_run


def run_sub_job(
    job: JobRecord,
    db_path: Path,
    runs_dir: Path,
    config: MatrixRunConfig,
    shutdown_event: Event = _shutdown_event,
) -> Result:
    """Run one claimed sub-job to completion and record its result."""
    console.print(f"\n[blue]Running job #{job.id}:[/blue] {escape(job.name or job.combination)}")

    run_dir = runs_dir / f"build-{job.build_number}" / f"job-{job.id}"
    try:
        runner = SubJobRunner.for_job(job, run_dir)
        runner.start()
    except (OSError, ValueError) as e:
        conn = get_connection(db_path)
        try:
            complete_job(conn, job.id, Result.FAILURE, error_message=str(e))
        finally:
            conn.close()
        return Result.FAILURE

    if runner.pid and runner.pgid:
        conn = get_connection(db_path)
        try:
            update_job_process_info(conn, job.id, runner.pid, runner.pgid, str(run_dir))
        finally:
            conn.close()

    # Heartbeat thread
    heartbeat_stop = Event()
    cancel_requested = Event()

    def heartbeat_loop():
        while not heartbeat_stop.is_set():
            try:
                conn = get_connection(db_path)
                try:
                    cancel_time = update_job_heartbeat(conn, job.id)
                    if cancel_time:
                        cancel_requested.set()
                finally:
                    conn.close()
            except Exception as e:  # noqa: BLE001
                console.print(f"[yellow]Warning:[/yellow] Heartbeat failed: {e}")
            # Also how quickly a cancellation request is noticed
            heartbeat_stop.wait(timeout=min(config.heartbeat_interval, config.poll_interval))

    heartbeat_thread = Thread(target=heartbeat_loop, daemon=True)
    heartbeat_thread.start()

    exit_code = None
    error_message = None

    try:
        while runner.is_running:
            if shutdown_event.is_set() or cancel_requested.is_set():
                reason = "shutdown" if shutdown_event.is_set() else "cancelled"
                console.print(f"[yellow]Killing job ({reason})...[/yellow]")
                exit_code = runner.kill(grace_period=config.kill_grace_period)
                error_message = f"Job {reason}"
                break

            time.sleep(0.2)

        if exit_code is None:
            exit_code = runner.wait()

    finally:
        heartbeat_stop.set()
        heartbeat_thread.join(timeout=2.0)

    result = runner.result(config.unstable_exit_code) or Result.FAILURE

    conn = get_connection(db_path)
    try:
        complete_job(
            conn,
            job.id,
            result,
            exit_code=exit_code,
            error_message=error_message,
        )
    finally:
        conn.close()

    return result

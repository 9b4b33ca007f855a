# Copyright (c) Syntropy Systems
"""SQLite database layer with WAL mode and atomic operations."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from matrixrun.models.db import BuildRecord, JobRecord, WorkerRecord

if TYPE_CHECKING:
    from matrixrun.models.base import JSONObject
    from matrixrun.result import Result

# SQL schema for matrixrun database
SCHEMA = """
-- Parent (matrix) builds
CREATE TABLE IF NOT EXISTS builds (
    number INTEGER PRIMARY KEY AUTOINCREMENT,
    project TEXT NOT NULL,
    status TEXT DEFAULT 'building',  -- building, completed
    result TEXT,                     -- SUCCESS, UNSTABLE, FAILURE, NOT_BUILT, ABORTED
    parameters TEXT,                 -- JSON object passed to every sub-job
    only TEXT,                       -- JSON array of combination keys (partial rebuild)
    base_build INTEGER REFERENCES builds(number),

    started_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    finished_at TEXT,

    -- Interruption (operator cancel, timeout)
    interrupt_requested_at TEXT,
    interrupt_cause TEXT,

    summary TEXT  -- JSON, written by aggregators
);

-- Sub-jobs (one per configuration per parent build)
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project TEXT NOT NULL,
    build_number INTEGER NOT NULL REFERENCES builds(number),  -- upstream cause
    combination TEXT NOT NULL,   -- canonical key, e.g. os=linux,python=3.11
    name TEXT,
    command_argv TEXT NOT NULL,  -- JSON array of argv tokens
    workdir TEXT NOT NULL,       -- Absolute path to run from
    parameters TEXT,             -- JSON object inherited from the parent build
    status TEXT DEFAULT 'queued',  -- queued, running, completed, cancelled
    result TEXT,

    attempt INTEGER DEFAULT 1,

    -- Timestamps
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    started_at TEXT,
    finished_at TEXT,

    -- Worker assignment
    worker_id TEXT,
    heartbeat_at TEXT,

    -- Process tracking (for diagnostics and cancellation)
    pid INTEGER,
    pgid INTEGER,

    exit_code INTEGER,
    error_message TEXT,

    -- Cancellation
    cancel_requested_at TEXT,

    run_dir TEXT
);

-- Workers table (self-registration)
CREATE TABLE IF NOT EXISTS workers (
    id TEXT PRIMARY KEY,
    pid INTEGER,
    hostname TEXT,
    gpu_index INTEGER,
    status TEXT DEFAULT 'idle',  -- idle, busy, offline
    current_job_id INTEGER,
    started_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    last_heartbeat TEXT
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_heartbeat ON jobs(heartbeat_at);
CREATE INDEX IF NOT EXISTS idx_jobs_combination ON jobs(combination, build_number);
CREATE INDEX IF NOT EXISTS idx_jobs_build ON jobs(build_number);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Run a block as one exclusive write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so workers
    claiming or completing jobs cannot interleave with the block.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


# --- Build Operations ---

def create_build(
    conn: sqlite3.Connection,
    project: str,
    parameters: Optional[dict[str, str]] = None,
    only: Optional[list[str]] = None,
    base_build: Optional[int] = None,
) -> int:
    """Create a new parent build and return its number."""
    cursor = conn.execute(
        """
        INSERT INTO builds (project, parameters, only, base_build, started_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            project,
            json.dumps(parameters) if parameters else None,
            json.dumps(only) if only else None,
            base_build,
            utcnow(),
        ),
    )
    number = cursor.lastrowid
    assert number is not None
    return number


def complete_build(conn: sqlite3.Connection, number: int, result: Result) -> None:
    """Record the final result of a parent build."""
    conn.execute(
        """
        UPDATE builds
        SET status = 'completed', result = ?, finished_at = ?
        WHERE number = ?
        """,
        (result.name, utcnow(), number),
    )


def set_build_summary(conn: sqlite3.Connection, number: int, summary: JSONObject) -> None:
    """Store the aggregated summary of a parent build."""
    conn.execute(
        "UPDATE builds SET summary = ? WHERE number = ?",
        (json.dumps(summary), number),
    )


def request_build_interrupt(conn: sqlite3.Connection, number: int, cause: str) -> str:
    """
    Ask a running parent build to stop. Returns the build's status.

    The build process notices the request on its next poll.
    """
    row = conn.execute(
        "SELECT status FROM builds WHERE number = ?",
        (number,),
    ).fetchone()

    if row is None:
        raise ValueError(f"Build {number} not found")

    if row["status"] == "building":
        conn.execute(
            """
            UPDATE builds
            SET interrupt_requested_at = ?, interrupt_cause = ?
            WHERE number = ? AND interrupt_requested_at IS NULL
            """,
            (utcnow(), cause, number),
        )

    return row["status"]


def record_build_interruption(conn: sqlite3.Connection, number: int, cause: str) -> None:
    """Record why a build was interrupted (keeps an earlier cause if present)."""
    conn.execute(
        """
        UPDATE builds
        SET interrupt_requested_at = COALESCE(interrupt_requested_at, ?),
            interrupt_cause = COALESCE(interrupt_cause, ?)
        WHERE number = ?
        """,
        (utcnow(), cause, number),
    )


def get_build(conn: sqlite3.Connection, number: int) -> Optional[BuildRecord]:
    """Get a parent build by number."""
    row = conn.execute(
        "SELECT * FROM builds WHERE number = ?",
        (number,),
    ).fetchone()

    if row is None:
        return None

    return BuildRecord.model_validate(dict(row))


def get_builds(
    conn: sqlite3.Connection,
    project: Optional[str] = None,
    limit: int = 20,
) -> list[BuildRecord]:
    """Get the most recent parent builds."""
    query = "SELECT * FROM builds WHERE 1=1"
    params: list[Any] = []

    if project:
        query += " AND project = ?"
        params.append(project)

    query += " ORDER BY number DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [BuildRecord.model_validate(dict(row)) for row in rows]


def get_last_build_number(conn: sqlite3.Connection, project: str) -> Optional[int]:
    """Number of the project's most recent build, if any."""
    row = conn.execute(
        "SELECT MAX(number) AS number FROM builds WHERE project = ?",
        (project,),
    ).fetchone()
    return row["number"] if row else None


# --- Job Operations ---

def create_job(
    conn: sqlite3.Connection,
    project: str,
    build_number: int,
    combination: str,
    command_argv: list[str],
    workdir: str,
    name: Optional[str] = None,
    parameters: Optional[dict[str, str]] = None,
) -> int:
    """Queue a sub-job for one configuration and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO jobs (project, build_number, combination, name, command_argv,
                          workdir, parameters, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            project,
            build_number,
            combination,
            name,
            json.dumps(command_argv),
            workdir,
            json.dumps(parameters) if parameters else None,
            utcnow(),
        ),
    )
    job_id = cursor.lastrowid
    assert job_id is not None
    return job_id


def claim_job(conn: sqlite3.Connection, worker_id: str) -> Optional[JobRecord]:
    """
    Atomically claim the next queued job for a worker.

    Uses UPDATE...RETURNING with subquery for atomic claim.
    Returns the job if claimed, None if no jobs available.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")

        # Atomic update with subquery - claim in a single statement
        now = utcnow()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running',
                worker_id = ?,
                started_at = ?,
                heartbeat_at = ?
            WHERE id = (
                SELECT id FROM jobs
                WHERE status = 'queued'
                ORDER BY created_at, id
                LIMIT 1
            )
            RETURNING *
            """,
            (worker_id, now, now),
        )

        row = cursor.fetchone()
        conn.execute("COMMIT")

        if row is None:
            return None

        return JobRecord.model_validate(dict(row))
    except Exception:
        conn.execute("ROLLBACK")
        raise


def update_job_process_info(
    conn: sqlite3.Connection,
    job_id: int,
    pid: int,
    pgid: int,
    run_dir: Optional[str] = None,
) -> None:
    """Store process info for a running job."""
    conn.execute(
        "UPDATE jobs SET pid = ?, pgid = ?, run_dir = COALESCE(?, run_dir) WHERE id = ?",
        (pid, pgid, run_dir, job_id),
    )


def update_job_heartbeat(conn: sqlite3.Connection, job_id: int) -> Optional[str]:
    """
    Update the heartbeat timestamp for a job.

    Returns cancel_requested_at if cancellation was requested, None otherwise.
    """
    now = utcnow()
    conn.execute(
        "UPDATE jobs SET heartbeat_at = ? WHERE id = ?",
        (now, job_id),
    )

    row = conn.execute(
        "SELECT cancel_requested_at FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()

    return row["cancel_requested_at"] if row else None


def complete_job(
    conn: sqlite3.Connection,
    job_id: int,
    result: Result,
    exit_code: Optional[int] = None,
    error_message: Optional[str] = None,
) -> None:
    """Mark a running job as finished with the given result."""
    now = utcnow()
    conn.execute(
        """
        UPDATE jobs
        SET status = 'completed', result = ?, finished_at = ?, exit_code = ?,
            error_message = ?, pid = NULL, pgid = NULL
        WHERE id = ?
        """,
        (result.name, now, exit_code, error_message, job_id),
    )


def cancel_job(conn: sqlite3.Connection, job_id: int) -> str:
    """
    Cancel a job. Returns the previous status.

    - If queued: marks as cancelled immediately
    - If running: sets cancel_requested_at (worker will handle termination)
    """
    row = conn.execute(
        "SELECT status FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()

    if row is None:
        raise ValueError(f"Job {job_id} not found")

    old_status = row["status"]
    now = utcnow()

    if old_status == "queued":
        conn.execute(
            "UPDATE jobs SET status = 'cancelled', finished_at = ? WHERE id = ?",
            (now, job_id),
        )
    elif old_status == "running":
        conn.execute(
            "UPDATE jobs SET cancel_requested_at = COALESCE(cancel_requested_at, ?) WHERE id = ?",
            (now, job_id),
        )

    return old_status


def get_job(conn: sqlite3.Connection, job_id: int) -> Optional[JobRecord]:
    """Get a job by ID."""
    row = conn.execute(
        "SELECT * FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()

    if row is None:
        return None

    return JobRecord.model_validate(dict(row))


def find_queued_job(
    conn: sqlite3.Connection,
    combination: str,
    build_number: int,
) -> Optional[JobRecord]:
    """The pending queue entry of a configuration for a parent build."""
    row = conn.execute(
        """
        SELECT * FROM jobs
        WHERE combination = ? AND build_number = ? AND status = 'queued'
        ORDER BY id DESC LIMIT 1
        """,
        (combination, build_number),
    ).fetchone()

    if row is None:
        return None

    return JobRecord.model_validate(dict(row))


def find_started_job(
    conn: sqlite3.Connection,
    combination: str,
    build_number: int,
) -> Optional[JobRecord]:
    """The job that ran (or is running) a configuration for a parent build."""
    row = conn.execute(
        """
        SELECT * FROM jobs
        WHERE combination = ? AND build_number = ?
          AND status IN ('running', 'completed')
        ORDER BY id DESC LIMIT 1
        """,
        (combination, build_number),
    ).fetchone()

    if row is None:
        return None

    return JobRecord.model_validate(dict(row))


def get_queued_jobs_for(conn: sqlite3.Connection, combination: str) -> list[JobRecord]:
    """All pending queue entries of a configuration, for any parent build."""
    rows = conn.execute(
        """
        SELECT * FROM jobs
        WHERE combination = ? AND status = 'queued'
        ORDER BY created_at, id
        """,
        (combination,),
    ).fetchall()

    return [JobRecord.model_validate(dict(row)) for row in rows]


def count_queued_ahead(conn: sqlite3.Connection, job_id: int) -> int:
    """Number of queued jobs that will be claimed before this one."""
    row = conn.execute(
        """
        SELECT COUNT(*) AS n FROM jobs AS other, jobs AS this
        WHERE this.id = ? AND other.status = 'queued'
          AND (other.created_at < this.created_at
               OR (other.created_at = this.created_at AND other.id < this.id))
        """,
        (job_id,),
    ).fetchone()
    return int(row["n"]) if row else 0


def get_build_jobs(conn: sqlite3.Connection, build_number: int) -> list[JobRecord]:
    """All sub-jobs of a parent build."""
    rows = conn.execute(
        "SELECT * FROM jobs WHERE build_number = ? ORDER BY id",
        (build_number,),
    ).fetchall()

    return [JobRecord.model_validate(dict(row)) for row in rows]


def get_active_jobs(conn: sqlite3.Connection) -> list[JobRecord]:
    """Get all queued and running jobs."""
    rows = conn.execute(
        """
        SELECT * FROM jobs
        WHERE status IN ('queued', 'running')
        ORDER BY created_at, id
        """
    ).fetchall()

    return [JobRecord.model_validate(dict(row)) for row in rows]


def get_orphaned_jobs(conn: sqlite3.Connection, timeout_seconds: int = 120) -> list[JobRecord]:
    """
    Find running jobs with stale heartbeats (likely orphaned).

    A job is considered orphaned if:
    - Status is 'running'
    - heartbeat_at is older than timeout_seconds ago
    """
    now = datetime.now(timezone.utc)
    cutoff_dt = now - timedelta(seconds=timeout_seconds)
    cutoff = cutoff_dt.strftime("%Y-%m-%dT%H:%M:%SZ")

    rows = conn.execute(
        """
        SELECT * FROM jobs
        WHERE status = 'running'
          AND heartbeat_at IS NOT NULL
          AND heartbeat_at < ?
        """,
        (cutoff,),
    ).fetchall()

    return [JobRecord.model_validate(dict(row)) for row in rows]


def requeue_orphaned_jobs(conn: sqlite3.Connection, timeout_seconds: int = 120) -> list[JobRecord]:
    """
    Find and requeue orphaned jobs.

    Orphaned jobs are running jobs with stale heartbeats.
    They are reset to 'queued' status with incremented attempt counter,
    so the waiting build sees a queue entry again instead of a lost run.

    Returns list of requeued jobs.
    """
    orphaned = get_orphaned_jobs(conn, timeout_seconds)

    for job in orphaned:
        conn.execute(
            """
            UPDATE jobs
            SET status = 'queued',
                worker_id = NULL,
                started_at = NULL,
                heartbeat_at = NULL,
                cancel_requested_at = NULL,
                pid = NULL,
                pgid = NULL,
                attempt = attempt + 1
            WHERE id = ?
            """,
            (job.id,),
        )

    return orphaned


# --- Worker Operations ---

def register_worker(
    conn: sqlite3.Connection,
    worker_id: str,
    pid: int,
    hostname: str,
    gpu_index: Optional[int] = None,
) -> None:
    """Register or update a worker."""
    now = utcnow()
    conn.execute(
        """
        INSERT INTO workers (id, pid, hostname, gpu_index, status, started_at, last_heartbeat)
        VALUES (?, ?, ?, ?, 'idle', ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            pid = excluded.pid,
            status = 'idle',
            started_at = excluded.started_at,
            last_heartbeat = excluded.last_heartbeat
        """,
        (worker_id, pid, hostname, gpu_index, now, now),
    )


def update_worker_status(
    conn: sqlite3.Connection,
    worker_id: str,
    status: str,
    current_job_id: Optional[int] = None,
) -> None:
    """Update worker status and current job."""
    now = utcnow()
    conn.execute(
        """
        UPDATE workers
        SET status = ?, current_job_id = ?, last_heartbeat = ?
        WHERE id = ?
        """,
        (status, current_job_id, now, worker_id),
    )


def unregister_worker(conn: sqlite3.Connection, worker_id: str) -> None:
    """Mark worker as offline on graceful shutdown."""
    conn.execute(
        "UPDATE workers SET status = 'offline', current_job_id = NULL WHERE id = ?",
        (worker_id,),
    )


def get_workers(conn: sqlite3.Connection) -> list[WorkerRecord]:
    """Get all registered workers."""
    rows = conn.execute("SELECT * FROM workers ORDER BY id").fetchall()
    return [WorkerRecord.model_validate(dict(row)) for row in rows]

# Copyright (c) Syntropy Systems
"""Tests for matrixrun database operations."""

import sqlite3

import pytest

from matrixrun.db import (
    cancel_job,
    claim_job,
    complete_build,
    complete_job,
    count_queued_ahead,
    create_build,
    create_job,
    find_queued_job,
    find_started_job,
    get_active_jobs,
    get_build,
    get_build_jobs,
    get_builds,
    get_job,
    get_last_build_number,
    get_orphaned_jobs,
    get_queued_jobs_for,
    get_workers,
    record_build_interruption,
    register_worker,
    request_build_interrupt,
    requeue_orphaned_jobs,
    set_build_summary,
    unregister_worker,
    update_job_heartbeat,
    write_transaction,
)
from matrixrun.result import Result


def queue_job(conn: sqlite3.Connection, build_number: int, combination: str = "os=linux") -> int:
    return create_job(
        conn,
        project="kitchen",
        build_number=build_number,
        combination=combination,
        command_argv=["python", "test.py", "--os", "linux"],
        workdir="/tmp/test",
        name=f"kitchen#{build_number} {combination}",
        parameters={"commit": "abc123"},
    )


class TestBuildOperations:
    """Tests for parent build records."""

    def test_create_build(self, db_connection: sqlite3.Connection) -> None:
        """Test creating a build."""
        number = create_build(db_connection, "kitchen", parameters={"commit": "abc123"})

        assert number == 1

        build = get_build(db_connection, number)
        assert build is not None
        assert build.project == "kitchen"
        assert build.status == "building"
        assert build.result is None
        assert build.parameters == {"commit": "abc123"}
        assert build.only is None

    def test_build_numbers_increase(self, db_connection: sqlite3.Connection) -> None:
        first = create_build(db_connection, "kitchen")
        second = create_build(db_connection, "nightly")
        third = create_build(db_connection, "kitchen", only=["os=linux"], base_build=first)

        assert first < second < third
        assert get_last_build_number(db_connection, "kitchen") == third
        assert get_last_build_number(db_connection, "other") is None

        build = get_build(db_connection, third)
        assert build is not None
        assert build.only == ["os=linux"]
        assert build.base_build == first

    def test_complete_build(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")

        complete_build(db_connection, number, Result.UNSTABLE)
        set_build_summary(db_connection, number, {"combined": "UNSTABLE"})

        build = get_build(db_connection, number)
        assert build is not None
        assert build.status == "completed"
        assert build.result == Result.UNSTABLE
        assert build.finished_at is not None
        assert build.summary == {"combined": "UNSTABLE"}

    def test_get_builds(self, db_connection: sqlite3.Connection) -> None:
        for project in ("kitchen", "nightly", "kitchen"):
            _ = create_build(db_connection, project)

        assert [b.number for b in get_builds(db_connection)] == [3, 2, 1]
        assert [b.number for b in get_builds(db_connection, project="kitchen")] == [3, 1]
        assert len(get_builds(db_connection, limit=1)) == 1

    def test_request_interrupt(self, db_connection: sqlite3.Connection) -> None:
        """Only the first interrupt request is kept."""
        number = create_build(db_connection, "kitchen")

        assert request_build_interrupt(db_connection, number, "Aborted by operator") == "building"
        assert request_build_interrupt(db_connection, number, "Second request") == "building"

        build = get_build(db_connection, number)
        assert build is not None
        assert build.interrupt_requested_at is not None
        assert build.interrupt_cause == "Aborted by operator"

    def test_request_interrupt_finished_build(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        complete_build(db_connection, number, Result.SUCCESS)

        assert request_build_interrupt(db_connection, number, "too late") == "completed"

        build = get_build(db_connection, number)
        assert build is not None
        assert build.interrupt_cause is None

    def test_request_interrupt_unknown_build(self, db_connection: sqlite3.Connection) -> None:
        with pytest.raises(ValueError, match="Build 99 not found"):
            request_build_interrupt(db_connection, 99, "cause")

    def test_record_interruption_keeps_operator_cause(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        request_build_interrupt(db_connection, number, "Aborted by operator")

        record_build_interruption(db_connection, number, "Timed out after 5s")
        other = create_build(db_connection, "kitchen")
        record_build_interruption(db_connection, other, "Timed out after 5s")

        build = get_build(db_connection, number)
        assert build is not None
        assert build.interrupt_cause == "Aborted by operator"
        build = get_build(db_connection, other)
        assert build is not None
        assert build.interrupt_cause == "Timed out after 5s"
        assert build.interrupt_requested_at is not None


class TestJobOperations:
    """Tests for sub-job CRUD operations."""

    def test_create_job(self, db_connection: sqlite3.Connection) -> None:
        """Test queueing a sub-job."""
        number = create_build(db_connection, "kitchen")
        job_id = queue_job(db_connection, number)

        job = get_job(db_connection, job_id)
        assert job is not None
        assert job.status == "queued"
        assert job.build_number == number
        assert job.combination == "os=linux"
        assert job.command_argv == ["python", "test.py", "--os", "linux"]
        assert job.parameters == {"commit": "abc123"}
        assert dict(job.parsed_combination) == {"os": "linux"}

    def test_claim_job(self, db_connection: sqlite3.Connection) -> None:
        """Test atomic job claiming."""
        number = create_build(db_connection, "kitchen")
        job_id = queue_job(db_connection, number)

        job = claim_job(db_connection, "worker-1")

        assert job is not None
        assert job.id == job_id
        assert job.status == "running"
        assert job.worker_id == "worker-1"
        assert job.heartbeat_at is not None

    def test_claim_in_queue_order(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        first = queue_job(db_connection, number, "os=linux")
        second = queue_job(db_connection, number, "os=windows")

        claimed = [claim_job(db_connection, "w"), claim_job(db_connection, "w"), claim_job(db_connection, "w")]

        assert [j.id if j else None for j in claimed] == [first, second, None]

    def test_complete_job(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        job_id = queue_job(db_connection, number)
        _ = claim_job(db_connection, "worker-1")

        complete_job(db_connection, job_id, Result.FAILURE, exit_code=2, error_message="boom")

        job = get_job(db_connection, job_id)
        assert job is not None
        assert job.status == "completed"
        assert job.result == Result.FAILURE
        assert job.exit_code == 2
        assert job.error_message == "boom"

    def test_cancel_queued_job(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        job_id = queue_job(db_connection, number)

        assert cancel_job(db_connection, job_id) == "queued"

        job = get_job(db_connection, job_id)
        assert job is not None
        assert job.status == "cancelled"
        assert claim_job(db_connection, "worker-1") is None

    def test_cancel_running_job(self, db_connection: sqlite3.Connection) -> None:
        """Cancelling a running job only flags it for the worker."""
        number = create_build(db_connection, "kitchen")
        job_id = queue_job(db_connection, number)
        _ = claim_job(db_connection, "worker-1")

        assert cancel_job(db_connection, job_id) == "running"

        job = get_job(db_connection, job_id)
        assert job is not None
        assert job.status == "running"
        assert update_job_heartbeat(db_connection, job_id) == job.cancel_requested_at

    def test_cancel_unknown_job(self, db_connection: sqlite3.Connection) -> None:
        with pytest.raises(ValueError, match="Job 5 not found"):
            cancel_job(db_connection, 5)

    def test_find_jobs_by_combination(self, db_connection: sqlite3.Connection) -> None:
        """Queue entries and runs are looked up per configuration and build."""
        first = create_build(db_connection, "kitchen")
        second = create_build(db_connection, "kitchen")
        old = queue_job(db_connection, first)
        new = queue_job(db_connection, second)

        queued = find_queued_job(db_connection, "os=linux", second)
        assert queued is not None
        assert queued.id == new
        assert find_started_job(db_connection, "os=linux", second) is None
        assert [j.id for j in get_queued_jobs_for(db_connection, "os=linux")] == [old, new]

        _ = claim_job(db_connection, "worker-1")
        started = find_started_job(db_connection, "os=linux", first)
        assert started is not None
        assert started.id == old
        assert find_queued_job(db_connection, "os=linux", first) is None

    def test_count_queued_ahead(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        ids = [queue_job(db_connection, number, f"n={i}") for i in range(3)]

        assert [count_queued_ahead(db_connection, i) for i in ids] == [0, 1, 2]

        _ = claim_job(db_connection, "worker-1")
        assert count_queued_ahead(db_connection, ids[2]) == 1

    def test_build_and_active_jobs(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        ids = [queue_job(db_connection, number, f"n={i}") for i in range(3)]
        job = claim_job(db_connection, "worker-1")
        assert job is not None
        complete_job(db_connection, job.id, Result.SUCCESS, exit_code=0)

        assert [j.id for j in get_build_jobs(db_connection, number)] == ids
        assert len(get_active_jobs(db_connection)) == 2

    def test_write_transaction_rolls_back(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        job_id = queue_job(db_connection, number)

        with pytest.raises(RuntimeError), write_transaction(db_connection):
            cancel_job(db_connection, job_id)
            raise RuntimeError("abort")

        job = get_job(db_connection, job_id)
        assert job is not None
        assert job.status == "queued"


class TestOrphanedJobs:
    """Tests for recovering jobs of dead workers."""

    def test_requeue_stale_job(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        job_id = queue_job(db_connection, number)
        _ = claim_job(db_connection, "worker-1")
        db_connection.execute(
            "UPDATE jobs SET heartbeat_at = '2000-01-01T00:00:00Z' WHERE id = ?", (job_id,)
        )

        assert [j.id for j in get_orphaned_jobs(db_connection, 60)] == [job_id]
        requeued = requeue_orphaned_jobs(db_connection, 60)

        assert [j.id for j in requeued] == [job_id]
        job = get_job(db_connection, job_id)
        assert job is not None
        assert job.status == "queued"
        assert job.attempt == 2
        assert job.worker_id is None

    def test_fresh_heartbeat_is_not_orphaned(self, db_connection: sqlite3.Connection) -> None:
        number = create_build(db_connection, "kitchen")
        _ = queue_job(db_connection, number)
        _ = claim_job(db_connection, "worker-1")

        assert requeue_orphaned_jobs(db_connection, 60) == []


class TestWorkerOperations:
    """Tests for worker registration."""

    def test_register_worker(self, db_connection: sqlite3.Connection) -> None:
        """Test worker registration."""
        register_worker(db_connection, "host:gpu0", 1234, "host", 0)

        workers = get_workers(db_connection)
        assert len(workers) == 1
        assert workers[0].id == "host:gpu0"
        assert workers[0].pid == 1234
        assert workers[0].status == "idle"

    def test_unregister_worker(self, db_connection: sqlite3.Connection) -> None:
        """Test worker unregistration."""
        register_worker(db_connection, "host:gpu0", 1234, "host", 0)
        unregister_worker(db_connection, "host:gpu0")

        workers = get_workers(db_connection)
        assert workers[0].status == "offline"

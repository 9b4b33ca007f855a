# Copyright (c) Syntropy Systems
"""Configurations, runs and queue entries backed by the SQLite job queue."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from rich.markup import escape

from matrixrun.axes import Combination, build_command
from matrixrun.db import (
    cancel_job,
    count_queued_ahead,
    create_job,
    find_queued_job,
    find_started_job,
    get_queued_jobs_for,
    get_workers,
    write_transaction,
)

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterator

    from rich.console import Console

    from matrixrun.interfaces import UpstreamCause
    from matrixrun.models.db import JobRecord
    from matrixrun.result import Result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockageReason:
    """Why a queued job has not been claimed yet."""

    text: str

    def print(self, log: Console) -> None:
        log.print(escape(self.text))

    def __str__(self) -> str:
        return self.text


class JobQueue:
    """Access to the shared job queue for one parent build process.

    All queue access of the build goes through one connection, used only
    by the coordinating thread.
    """

    conn: sqlite3.Connection

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @contextmanager
    def exclusive(self) -> Iterator[JobQueue]:
        """Hold the queue-wide write lock for a batch of mutations."""
        with write_transaction(self.conn):
            yield self

    def pending(self, combination: Combination, build_number: int) -> Optional[PendingJob]:
        record = find_queued_job(self.conn, combination.key, build_number)
        return PendingJob(self, record) if record is not None else None

    def pending_for(self, combination: Combination) -> list[PendingJob]:
        return [PendingJob(self, r) for r in get_queued_jobs_for(self.conn, combination.key)]

    def started(self, combination: Combination, build_number: int) -> Optional[SubRun]:
        record = find_started_job(self.conn, combination.key, build_number)
        return SubRun(self, record) if record is not None else None

    def explain(self, record: JobRecord) -> str:
        """Describe why a queued job is still waiting."""
        workers = [w for w in get_workers(self.conn) if w.status != "offline"]
        if not workers:
            return "Waiting for a worker: no workers are online"
        ahead = count_queued_ahead(self.conn, record.id)
        if all(w.status == "busy" for w in workers):
            return f"Waiting for next available worker ({len(workers)} busy, {ahead} ahead)"
        if ahead:
            return f"Waiting behind {ahead} queued job(s)"
        return "Waiting to be claimed by a worker"


class PendingJob:
    """A queued sub-job (the queue item of a configuration)."""

    def __init__(self, queue: JobQueue, record: JobRecord) -> None:
        self._queue = queue
        self.record = record

    @property
    def why(self) -> Optional[str]:
        return self._queue.explain(self.record)

    @property
    def cause_of_blockage(self) -> BlockageReason:
        return BlockageReason(self._queue.explain(self.record))

    @property
    def parent_build(self) -> Optional[int]:
        return self.record.build_number

    def cancel(self) -> bool:
        """Cancel the entry. Returns False if a worker already claimed it."""
        return cancel_job(self._queue.conn, self.record.id) == "queued"

    def __repr__(self) -> str:
        return f"PendingJob(#{self.record.id}, {self.record.combination})"


class SubRun:
    """A claimed sub-job: running, or finished with a result."""

    def __init__(self, queue: JobQueue, record: JobRecord) -> None:
        self._queue = queue
        self.record = record

    @property
    def combination(self) -> Combination:
        return self.record.parsed_combination

    @property
    def number(self) -> int:
        return self.record.build_number

    @property
    def is_building(self) -> bool:
        return self.record.status == "running"

    @property
    def result(self) -> Optional[Result]:
        if self.record.status != "completed":
            return None
        return self.record.result

    def interrupt(self) -> bool:
        """Ask the worker executing this run to kill it."""
        return cancel_job(self._queue.conn, self.record.id) == "running"

    def __repr__(self) -> str:
        return f"SubRun(#{self.record.id}, {self.record.combination}, {self.record.status})"


class MatrixConfiguration:
    """One combination of a matrix project, schedulable on the job queue."""

    def __init__(
        self,
        combination: Combination,
        queue: JobQueue,
        program: str,
        workdir: str,
    ) -> None:
        self.combination = combination
        self.queue = queue
        self.program = program
        self.workdir = workdir

    def schedule_build(self, actions: dict[str, str], cause: UpstreamCause) -> bool:
        """Queue a sub-job for the parent build named by ``cause``.

        Returns False if this configuration is already queued for that build.
        """
        if self.queue.pending(self.combination, cause.build_number) is not None:
            logger.debug("%s already queued for build %d", self.combination, cause.build_number)
            return False
        job_id = create_job(
            self.queue.conn,
            project=cause.project,
            build_number=cause.build_number,
            combination=self.combination.key,
            command_argv=build_command(self.program, self.combination),
            workdir=self.workdir,
            name=f"{cause.project}#{cause.build_number} {self.combination.key}",
            parameters=actions,
        )
        logger.debug("Queued job #%d for %s", job_id, self.combination)
        return True

    def get_build_by_number(self, number: int) -> Optional[SubRun]:
        return self.queue.started(self.combination, number)

    def get_queue_item(self, number: int) -> Optional[PendingJob]:
        return self.queue.pending(self.combination, number)

    def queue_items(self) -> list[PendingJob]:
        return self.queue.pending_for(self.combination)

    def __repr__(self) -> str:
        return f"MatrixConfiguration({self.combination.key!r})"

    def __str__(self) -> str:
        return self.combination.key

# Copyright (c) Syntropy Systems
"""Parent (matrix) builds and their execution lifecycle."""
from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, Optional

from rich.markup import escape

from matrixrun.db import (
    complete_build,
    create_build,
    get_last_build_number,
    record_build_interruption,
    set_build_summary,
)
from matrixrun.errors import AbortError, InterruptedExecution
from matrixrun.filters import ACCEPT_ALL, Filter
from matrixrun.queue import JobQueue
from matrixrun.result import Result

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Sequence
    from contextlib import AbstractContextManager

    from rich.console import Console
    from typing_extensions import Protocol

    from matrixrun.aggregators import Aggregator
    from matrixrun.interfaces import Configuration
    from matrixrun.models.base import JSONObject
    from matrixrun.project import MatrixProject
    from matrixrun.strategy import ExecutionStrategy

    class ExclusiveQueue(Protocol):
        def exclusive(self) -> AbstractContextManager[object]: ...

logger = logging.getLogger(__name__)


class InterruptSignal:
    """Thread-safe interruption flag of one parent build.

    Set from signal handlers, timers or watcher threads; the coordinating
    thread observes it while sleeping. The first cause wins.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.cause: Optional[str] = None
        self.result: Result = Result.ABORTED

    def set(self, cause: str = "Aborted by user", result: Result = Result.ABORTED) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.cause = cause
            self.result = result
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class BuildExecution:
    """Lives from the start of a parent build's execution to its end.

    Holds what is only needed while the build runs: the snapshot of active
    configurations, the aggregators and the interruption signal. Whatever
    way the strategy ends, sub-jobs still queued or running for this build
    are cancelled before ``run`` returns.
    """

    def __init__(
        self,
        number: int,
        project_name: str,
        active_configurations: Sequence[Configuration],
        aggregators: Sequence[Aggregator],
        log: Console,
        queue: ExclusiveQueue,
        combination_filter: Filter = ACCEPT_ALL,
        child_actions: Optional[dict[str, str]] = None,
        should_build: Optional[Callable[[Configuration], bool]] = None,
        interrupt_signal: Optional[InterruptSignal] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.number = number
        self.project_name = project_name
        self.active_configurations = tuple(active_configurations)
        self.aggregators = list(aggregators)
        self.log = log
        self.queue = queue
        self.combination_filter = combination_filter
        self.child_actions = dict(child_actions or {})
        self._should_build = should_build
        self.interrupt_signal = interrupt_signal or InterruptSignal()
        self._clock = clock
        self._cleaned_up = False
        self.interruption: Optional[InterruptedExecution] = None

    def should_build(self, configuration: Configuration) -> bool:
        if self._should_build is None:
            return True
        return self._should_build(configuration)

    def sleep(self, seconds: float) -> None:
        """Block the coordinating thread; raise if the build is interrupted."""
        if self.interrupt_signal.wait(seconds):
            raise InterruptedExecution(
                self.interrupt_signal.cause or "interrupted",
                self.interrupt_signal.result,
            )

    def clock(self) -> float:
        return self._clock()

    def interrupt(self, cause: str = "Aborted by user", result: Result = Result.ABORTED) -> None:
        self.interrupt_signal.set(cause, result)

    def run(self, strategy: ExecutionStrategy) -> Result:
        """Run the strategy and turn interruptions and aborts into a result."""
        try:
            return strategy.run(self)
        except InterruptedExecution as e:
            self.log.print(f"[yellow]Aborted[/yellow] ({escape(e.cause)})")
            self.interruption = e
            return e.result
        except AbortError as e:
            self.log.print(f"[red]{escape(str(e))}[/red]")
            return Result.FAILURE
        finally:
            self.cancel_outstanding()

    def cancel_outstanding(self) -> None:
        """Cancel queued sub-jobs of this build and interrupt running ones.

        Runs at most once and never raises.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True

        try:
            with self.queue.exclusive():
                for c in self.active_configurations:
                    name = escape(str(c.combination))
                    for item in c.queue_items():
                        if item.parent_build == self.number and item.cancel():
                            self.log.print(f"[yellow]Cancelled {name}[/yellow]")
                    run = c.get_build_by_number(self.number)
                    # A finished run may still be in post-processing; leave it alone
                    if run is not None and run.is_building and run.interrupt():
                        self.log.print(f"[yellow]Interrupting {name}[/yellow]")
        except Exception:  # noqa: BLE001
            logger.warning("Failed to cancel sub-jobs of build %d", self.number, exc_info=True)
            self.log.print("[yellow]Warning:[/yellow] could not cancel outstanding sub-jobs")

    def post(self) -> None:
        """Tell every aggregator the build is over. Exceptions propagate."""
        for a in self.aggregators:
            a.end_build()


class MatrixBuild:
    """One build of a matrix project."""

    number: int

    def __init__(
        self,
        project: MatrixProject,
        conn: sqlite3.Connection,
        log: Console,
        parameters: Optional[dict[str, str]] = None,
        only: Optional[list[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.project = project
        self.conn = conn
        self.log = log
        self.parameters = dict(parameters or {})
        self.only = project.check_combinations(only) if only else None
        self.interrupt_signal = InterruptSignal()
        self.execution: Optional[BuildExecution] = None
        self._clock = clock
        self.number = 0

    @property
    def project_name(self) -> str:
        return self.project.name

    def should_build(self, configuration: Configuration) -> bool:
        """False for configurations whose result is reused from the base build."""
        return self.only is None or configuration.combination.key in self.only

    def interrupt(self, cause: str = "Aborted by user", result: Result = Result.ABORTED) -> None:
        """Ask the build to stop. Safe to call from any thread."""
        self.interrupt_signal.set(cause, result)

    def store_summary(self, summary: JSONObject) -> None:
        set_build_summary(self.conn, self.number, summary)

    def start(self) -> int:
        """Create the build record and return the build number."""
        base_build = None
        if self.only is not None:
            base_build = get_last_build_number(self.conn, self.project_name)
        self.number = create_build(
            self.conn,
            self.project_name,
            parameters=self.parameters,
            only=self.only,
            base_build=base_build,
        )
        return self.number

    def _create_execution(self) -> BuildExecution:
        queue = JobQueue(self.conn)
        aggregators = [
            a
            for a in (
                aggregatable.create_aggregator(self, self.log)
                for aggregatable in self.project.aggregatables
            )
            if a is not None
        ]
        return BuildExecution(
            number=self.number,
            project_name=self.project_name,
            active_configurations=self.project.active_configurations(queue),
            aggregators=aggregators,
            log=self.log,
            queue=queue,
            combination_filter=self.project.combination_filter,
            child_actions=self.parameters,
            should_build=self.should_build,
            interrupt_signal=self.interrupt_signal,
            clock=self._clock,
        )

    def execute(self) -> Result:
        """Run the build to completion and record its result."""
        if not self.number:
            self.start()

        self.log.print(f"[bold]Building {escape(self.project_name)} #{self.number}[/bold]")
        try:
            execution = self._create_execution()
            self.execution = execution
            result = execution.run(self.project.strategy)
        except Exception:
            logger.exception("Build %d failed unexpectedly", self.number)
            complete_build(self.conn, self.number, Result.FAILURE)
            raise
        if execution.interruption is not None:
            record_build_interruption(self.conn, self.number, execution.interruption.cause)

        try:
            execution.post()
        except Exception as e:
            logger.exception("Aggregator failed at the end of build %d", self.number)
            self.log.print(f"[red]Aggregation failed:[/red] {escape(str(e))}")
            result = result.combine(Result.FAILURE)

        complete_build(self.conn, self.number, result)
        self.log.print(f"Finished: [{result.style}]{result}[/{result.style}]")
        return result

# Copyright (c) Syntropy Systems
"""Aggregation of sub-job results into the parent build.

An ``Aggregator`` is a stateful observer created fresh for every parent
build. It is notified when the build starts, whenever a configuration's run
completes, and when the build finishes. ``start_build`` and ``end_run`` can
return False to stop the build.

Aggregators are created by *aggregatables*: the entries of a matrix
definition's ``aggregators:`` list, looked up in ``AGGREGATABLES``.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from rich.table import Table

from matrixrun.result import Result, combine_all

if TYPE_CHECKING:
    from rich.console import Console

    from matrixrun.build import MatrixBuild
    from matrixrun.interfaces import Run
    from matrixrun.models.base import JSONObject


class Aggregator:
    """Observer of one parent build. Every callback defaults to "continue"."""

    build: MatrixBuild
    log: Console

    def __init__(self, build: MatrixBuild, log: Console) -> None:
        self.build = build
        self.log = log

    def start_build(self) -> bool:
        """Called before anything is scheduled. False aborts the build."""
        return True

    def end_run(self, run: Run) -> bool:
        """Called after each configuration's run completes.

        Never called for configurations that were cancelled before they
        started. False aborts the rest of the build.
        """
        return True

    def end_build(self) -> None:
        """Called once after the execution strategy has finished.

        Nothing is left to veto at this point; raise to fail the build.
        """


class Aggregatable:
    """Factory of aggregators, declared once and asked for a fresh one per build."""

    def create_aggregator(self, build: MatrixBuild, log: Console) -> Optional[Aggregator]:
        raise NotImplementedError

    @classmethod
    def from_options(cls, options: JSONObject) -> Aggregatable:
        return cls()


class SummaryAggregator(Aggregator):
    """Collects per-configuration results and stores them as the build summary."""

    def __init__(self, build: MatrixBuild, log: Console) -> None:
        super().__init__(build, log)
        self.results: dict[str, Result] = {}

    def end_run(self, run: Run) -> bool:
        if run.result is not None:
            self.results[run.combination.key] = run.result
        return True

    def end_build(self) -> None:
        if not self.results:
            return

        table = Table(title=f"{self.build.project_name} #{self.build.number}", show_header=True, header_style="bold")
        table.add_column("Configuration")
        table.add_column("Result")
        for key, result in self.results.items():
            table.add_row(key, f"[{result.style}]{result}[/{result.style}]")
        self.log.print(table)

        counts: dict[str, int] = {}
        for result in self.results.values():
            counts[result.name] = counts.get(result.name, 0) + 1

        self.build.store_summary({
            "results": {key: result.name for key, result in self.results.items()},
            "counts": counts,
            "combined": combine_all(self.results.values()).name,
        })


class SummaryAggregatable(Aggregatable):
    def create_aggregator(self, build: MatrixBuild, log: Console) -> SummaryAggregator:
        return SummaryAggregator(build, log)


class FailFastAggregator(Aggregator):
    """Stops the build once ``max_failures`` runs ended FAILURE or worse."""

    def __init__(self, build: MatrixBuild, log: Console, max_failures: int) -> None:
        super().__init__(build, log)
        self.max_failures = max_failures
        self.failures = 0

    def end_run(self, run: Run) -> bool:
        result = run.result
        if result is not None and not result.is_better_or_equal(Result.UNSTABLE):
            self.failures += 1
        if self.failures >= self.max_failures:
            self.log.print(
                f"[red]{self.failures} configuration(s) failed, stopping the build[/red]"
            )
            return False
        return True


class FailFastAggregatable(Aggregatable):
    def __init__(self, max_failures: int = 1) -> None:
        if max_failures < 1:
            msg = "fail-fast: max_failures must be at least 1"
            raise ValueError(msg)
        self.max_failures = max_failures

    def create_aggregator(self, build: MatrixBuild, log: Console) -> FailFastAggregator:
        return FailFastAggregator(build, log, self.max_failures)

    @classmethod
    def from_options(cls, options: JSONObject) -> FailFastAggregatable:
        max_failures = options.get("max_failures", 1)
        if not isinstance(max_failures, int) or isinstance(max_failures, bool):
            msg = "fail-fast: max_failures must be an integer"
            raise ValueError(msg)
        return cls(max_failures)


AGGREGATABLES: dict[str, type[Aggregatable]] = {
    "summary": SummaryAggregatable,
    "fail-fast": FailFastAggregatable,
}


def create_aggregatable(name: str, options: JSONObject) -> Aggregatable:
    """Look up an aggregatable by registry name and configure it."""
    try:
        aggregatable_cls = AGGREGATABLES[name]
    except KeyError:
        msg = f"Unknown aggregator '{name}' (available: {', '.join(sorted(AGGREGATABLES))})"
        raise ValueError(msg) from None
    return aggregatable_cls.from_options(options)

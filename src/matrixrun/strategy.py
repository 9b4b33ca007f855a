# Copyright (c) Syntropy Systems
"""Execution strategies: how the configurations of a matrix build are run.

A strategy decides which configurations run, in what order, how many are in
flight at once, whether a *touchstone* subset gates the rest, and how the
individual results combine into the parent build's result.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from rich.markup import escape

from matrixrun.errors import AggregatorVetoError, FilterEvaluationError
from matrixrun.filters import REJECT_ALL, Filter, parse_filter
from matrixrun.interfaces import UpstreamCause
from matrixrun.result import Result
from matrixrun.sorters import ConfigurationSorter, create_sorter

if TYPE_CHECKING:
    from collections.abc import Sequence

    from matrixrun.aggregators import Aggregator
    from matrixrun.axes import Axis
    from matrixrun.config import MatrixRunConfig
    from matrixrun.interfaces import BuildContext, Configuration, Run
    from matrixrun.models.matrix import StrategySettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitSettings:
    """Timing of the completion wait."""

    # Seconds between two observations of a configuration
    interval: float = 1.0

    # Consecutive "no run and no queue entry" observations before the
    # configuration is considered cancelled. Queue and run visibility is
    # only eventually consistent, so a single absent reading means nothing.
    cancel_confirmations: int = 5

    # Seconds in the queue before the blockage reason is reported
    queue_report_delay: float = 5.0

    @classmethod
    def from_config(cls, config: MatrixRunConfig) -> WaitSettings:
        return cls(
            interval=config.wait_interval,
            cancel_confirmations=config.cancel_confirmations,
            queue_report_delay=config.queue_report_delay,
        )


@dataclass
class Partition:
    """The active configurations split into three disjoint groups."""

    touchstone: list[Configuration] = field(default_factory=list)
    delayed: list[Configuration] = field(default_factory=list)
    skipped: list[Configuration] = field(default_factory=list)


def result_of(run: Optional[Run]) -> Result:
    """Result of a run; a run that never started counts as ABORTED."""
    if run is None:
        return Result.ABORTED
    return run.result if run.result is not None else Result.ABORTED


class ExecutionStrategy:
    """Controls how the configurations of a matrix build are executed."""

    def run(self, execution: BuildContext) -> Result:
        raise NotImplementedError

    def partition(self, execution: BuildContext) -> Partition:
        """Split the active configurations without running anything."""
        raise NotImplementedError

    @classmethod
    def from_settings(
        cls,
        settings: StrategySettings,
        axes: list[Axis],
        config: MatrixRunConfig,
    ) -> ExecutionStrategy:
        raise NotImplementedError


class DefaultExecutionStrategy(ExecutionStrategy):
    """Touchstone-gated strategy, parallel or sequential.

    1. Partition the active configurations into touchstone, delayed and
       skipped.
    2. Run the touchstone configurations and combine their results.
    3. Stop if a threshold is set and the touchstone result is strictly
       worse than it.
    4. Run the delayed configurations, combining into the same result.

    In parallel mode every configuration of a phase is queued before the
    first wait; in sequential mode each one is queued right before its own
    wait. Either way results are collected in scheduling order.
    """

    run_sequentially: bool
    touchstone_filter: Filter
    touchstone_result_threshold: Optional[Result]
    sorter: Optional[ConfigurationSorter]
    wait: WaitSettings

    def __init__(
        self,
        run_sequentially: bool = False,
        touchstone_filter: Optional[Filter] = None,
        touchstone_result_threshold: Optional[Result] = None,
        sorter: Optional[ConfigurationSorter] = None,
        wait: Optional[WaitSettings] = None,
    ) -> None:
        self.run_sequentially = run_sequentially
        self.touchstone_filter = touchstone_filter if touchstone_filter is not None else REJECT_ALL
        self.touchstone_result_threshold = touchstone_result_threshold
        self.sorter = sorter
        self.wait = wait if wait is not None else WaitSettings()

    @classmethod
    def from_settings(
        cls,
        settings: StrategySettings,
        axes: list[Axis],
        config: MatrixRunConfig,
    ) -> DefaultExecutionStrategy:
        sorter = None
        if settings.sorter:
            sorter = create_sorter(settings.sorter, settings.sorter_options, axes)
        return cls(
            run_sequentially=settings.run_sequentially,
            touchstone_filter=parse_filter(settings.touchstone_filter, REJECT_ALL),
            touchstone_result_threshold=settings.touchstone_result_threshold,
            sorter=sorter,
            wait=WaitSettings.from_config(config),
        )

    def run(self, execution: BuildContext) -> Result:
        partition = self.partition(execution)
        log = execution.log

        if not self._notify_start_build(execution.aggregators):
            log.print("[red]Aggregator refused to start the build[/red]")
            return Result.FAILURE

        touchstone = partition.touchstone
        delayed = partition.delayed
        if self.sorter is not None:
            touchstone = self.sorter.sort(touchstone)
            delayed = self.sorter.sort(delayed)

        result = self._run_phase(execution, touchstone, Result.SUCCESS)

        threshold = self.touchstone_result_threshold
        if threshold is not None and result.is_worse_than(threshold):
            log.print(f"Touchstone configurations resulted in {result}, so aborting...")
            return result

        return self._run_phase(execution, delayed, result)

    def partition(self, execution: BuildContext) -> Partition:
        partition = Partition()
        combination_filter = execution.combination_filter

        try:
            for c in execution.active_configurations:
                if not execution.should_build(c):
                    # Reused from an earlier build
                    partition.skipped.append(c)
                    continue

                if self.touchstone_filter.accept(execution, c.combination):
                    partition.touchstone.append(c)
                elif combination_filter.accept(execution, c.combination):
                    partition.delayed.append(c)
                else:
                    partition.skipped.append(c)
        except FilterEvaluationError as e:
            execution.log.print(f"[red]{escape(str(e))}[/red]")
            msg = "Failed executing combination filter"
            raise FilterEvaluationError(msg) from e

        logger.debug(
            "Partitioned build %d: %d touchstone, %d delayed, %d skipped",
            execution.number,
            len(partition.touchstone),
            len(partition.delayed),
            len(partition.skipped),
        )
        return partition

    def _run_phase(
        self,
        execution: BuildContext,
        configurations: Sequence[Configuration],
        result: Result,
    ) -> Result:
        if not self.run_sequentially:
            for c in configurations:
                self.schedule(execution, c)

        for c in configurations:
            if self.run_sequentially:
                self.schedule(execution, c)
            run = self.wait_for_completion(execution, c)
            self._notify_end_run(run, execution.aggregators)
            run_result = result_of(run)
            execution.log.print(
                f"Completed {escape(str(c.combination))}: "
                f"[{run_result.style}]{run_result}[/{run_result.style}]"
            )
            result = result.combine(run_result)

        return result

    def schedule(self, execution: BuildContext, configuration: Configuration) -> None:
        """Queue one configuration, passing on the parent's parameters."""
        execution.log.print(f"Triggering {escape(str(configuration.combination))}")
        cause = UpstreamCause(execution.project_name, execution.number)
        configuration.schedule_build(dict(execution.child_actions), cause)

    def wait_for_completion(
        self,
        execution: BuildContext,
        configuration: Configuration,
    ) -> Optional[Run]:
        """Poll until the configuration's run finishes.

        Returns None if the configuration was cancelled before it started,
        i.e. neither a run nor a queue entry was seen for
        ``cancel_confirmations`` consecutive polls.
        """
        log = execution.log
        number = execution.number
        name = escape(str(configuration.combination))
        why_in_queue = ""
        start = execution.clock()
        appears_cancelled = 0

        while True:
            run = configuration.get_build_by_number(number)

            # Either the run starts and finishes, or it is cancelled before
            # it ever starts.
            if run is not None and not run.is_building and run.result is not None:
                return run

            item = configuration.get_queue_item(number)
            if run is None and item is None:
                appears_cancelled += 1
            else:
                appears_cancelled = 0
            logger.debug(
                "%s: run=%r queued=%s absent=%d",
                configuration.combination,
                run,
                item is not None,
                appears_cancelled,
            )

            if appears_cancelled >= self.wait.cancel_confirmations:
                log.print(f"[yellow]{name} appears to be cancelled[/yellow]")
                return None

            if item is not None:
                why = item.why
                if (
                    why is not None
                    and why != why_in_queue
                    and execution.clock() - start > self.wait.queue_report_delay
                ):
                    log.print(f"Configuration {name} is still in the queue: ", end="")
                    item.cause_of_blockage.print(log)
                    why_in_queue = why

            execution.sleep(self.wait.interval)

    @staticmethod
    def _notify_start_build(aggregators: Sequence[Aggregator]) -> bool:
        return all(a.start_build() for a in aggregators)

    @staticmethod
    def _notify_end_run(run: Optional[Run], aggregators: Sequence[Aggregator]) -> None:
        if run is None:
            # Cancelled before it started
            return
        for a in aggregators:
            if not a.end_run(run):
                raise AggregatorVetoError


STRATEGIES: dict[str, type[ExecutionStrategy]] = {
    "classic": DefaultExecutionStrategy,
}


def create_strategy(
    settings: StrategySettings,
    axes: list[Axis],
    config: MatrixRunConfig,
) -> ExecutionStrategy:
    """Build the strategy named by ``settings.type``."""
    try:
        strategy_cls = STRATEGIES[settings.type]
    except KeyError:
        msg = f"Unknown execution strategy '{settings.type}' (available: {', '.join(sorted(STRATEGIES))})"
        raise ValueError(msg) from None
    return strategy_cls.from_settings(settings, axes, config)

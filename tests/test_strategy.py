# Copyright (c) Syntropy Systems
"""Tests for the touchstone-gated execution strategy."""

import io

import pytest
from fakes import FakeConfiguration, FakeExecution, RecordingAggregator, World
from rich.console import Console

from matrixrun.axes import parse_axes
from matrixrun.config import MatrixRunConfig
from matrixrun.errors import AggregatorVetoError, FilterEvaluationError, InterruptedExecution
from matrixrun.filters import ExpressionFilter
from matrixrun.interfaces import UpstreamCause
from matrixrun.models.matrix import StrategySettings
from matrixrun.result import Result
from matrixrun.sorters import AxisSorter, NameSorter
from matrixrun.strategy import (
    STRATEGIES,
    DefaultExecutionStrategy,
    WaitSettings,
    create_strategy,
    result_of,
)

LINUX = ExpressionFilter('os == "linux"')


def kitchen(world: World) -> list[FakeConfiguration]:
    """The four os x python configurations, in grid order."""
    keys = [
        "os=linux,python=3.11",
        "os=linux,python=3.12",
        "os=windows,python=3.11",
        "os=windows,python=3.12",
    ]
    return [
        FakeConfiguration(key, world) for key in keys
    ]


class TestPartition:
    """Tests for splitting configurations into touchstone, delayed and skipped."""

    def test_three_way_split(self, log: Console) -> None:
        """Every configuration lands in exactly one group."""
        world = World()
        configs = kitchen(world)
        execution = FakeExecution(
            configs,
            log,
            combination_filter=ExpressionFilter('python != "3.11" or os == "linux"'),
            skip=("os=linux,python=3.12",),
        )

        partition = DefaultExecutionStrategy(touchstone_filter=LINUX).partition(execution)

        assert [c.key for c in partition.touchstone] == ["os=linux,python=3.11"]
        assert [c.key for c in partition.delayed] == ["os=windows,python=3.12"]
        assert sorted(c.key for c in partition.skipped) == [
            "os=linux,python=3.12",
            "os=windows,python=3.11",
        ]

        groups = partition.touchstone + partition.delayed + partition.skipped
        assert len(groups) == len(configs)
        assert {c.key for c in groups} == {c.key for c in configs}

    def test_without_touchstone_filter_everything_is_delayed(self, log: Console) -> None:
        """No touchstone filter means an empty touchstone group."""
        configs = kitchen(World())
        partition = DefaultExecutionStrategy().partition(FakeExecution(configs, log))

        assert partition.touchstone == []
        assert len(partition.delayed) == 4
        assert partition.skipped == []

    def test_touchstone_filter_wins_over_combination_filter(self, log: Console) -> None:
        """A touchstone match is never skipped by the combination filter."""
        configs = kitchen(World())
        execution = FakeExecution(configs, log, combination_filter=ExpressionFilter('os != "linux"'))

        partition = DefaultExecutionStrategy(touchstone_filter=LINUX).partition(execution)

        assert len(partition.touchstone) == 2
        assert len(partition.delayed) == 2
        assert partition.skipped == []

    def test_filter_error_schedules_nothing(self, log: Console, log_buffer: io.StringIO) -> None:
        """A filter that cannot be evaluated aborts before anything is queued."""
        configs = kitchen(World())
        execution = FakeExecution(configs, log, combination_filter=ExpressionFilter('arch == "x86"'))
        strategy = DefaultExecutionStrategy(touchstone_filter=ExpressionFilter('os == "solaris"'))

        with pytest.raises(FilterEvaluationError, match="Failed executing combination filter"):
            strategy.run(execution)

        assert all(c.schedule_calls == [] for c in configs)
        assert "unknown axis 'arch'" in log_buffer.getvalue()


class TestTouchstoneGate:
    """Tests for the touchstone result threshold."""

    def test_worse_than_threshold_stops_delayed_phase(self, log: Console, log_buffer: io.StringIO) -> None:
        """A touchstone result strictly worse than the threshold skips the rest."""
        world = World()
        configs = kitchen(world)
        configs[1].result = Result.FAILURE
        strategy = DefaultExecutionStrategy(
            touchstone_filter=LINUX,
            touchstone_result_threshold=Result.UNSTABLE,
        )

        result = strategy.run(FakeExecution(configs, log))

        assert result == Result.FAILURE
        assert configs[2].schedule_calls == []
        assert configs[3].schedule_calls == []
        assert "Touchstone configurations resulted in FAILURE, so aborting..." in log_buffer.getvalue()

    def test_equal_to_threshold_runs_delayed_phase(self, log: Console) -> None:
        """The gate is a strict comparison: equal to the threshold still continues."""
        world = World()
        configs = kitchen(world)
        configs[0].result = Result.UNSTABLE
        strategy = DefaultExecutionStrategy(
            touchstone_filter=LINUX,
            touchstone_result_threshold=Result.UNSTABLE,
        )

        result = strategy.run(FakeExecution(configs, log))

        assert result == Result.UNSTABLE
        assert all(len(c.schedule_calls) == 1 for c in configs)

    def test_no_threshold_always_runs_delayed_phase(self, log: Console) -> None:
        """Without a threshold even an aborted touchstone lets the rest run."""
        world = World()
        configs = kitchen(world)
        configs[0].result = Result.ABORTED
        strategy = DefaultExecutionStrategy(touchstone_filter=LINUX)

        result = strategy.run(FakeExecution(configs, log))

        assert result == Result.ABORTED
        assert all(len(c.schedule_calls) == 1 for c in configs)

    def test_four_configurations_two_touchstones(self, log: Console) -> None:
        """Successful touchstones with a FAILURE threshold run all four."""
        world = World()
        configs = kitchen(world)
        configs[2].result = Result.UNSTABLE
        configs[3].result = Result.FAILURE
        strategy = DefaultExecutionStrategy(
            touchstone_filter=LINUX,
            touchstone_result_threshold=Result.FAILURE,
        )

        result = strategy.run(FakeExecution(configs, log))

        assert all(len(c.schedule_calls) == 1 for c in configs)
        assert world.keys("schedule")[:2] == [configs[0].key, configs[1].key]
        assert result == Result.FAILURE

    def test_touchstones_finish_before_delayed_are_scheduled(self, log: Console) -> None:
        """The delayed phase starts only after every touchstone completed."""
        world = World()
        configs = kitchen(world)
        configs[0].running_polls = 3
        strategy = DefaultExecutionStrategy(touchstone_filter=LINUX)

        strategy.run(FakeExecution(configs, log))

        schedule_index = world.events.index(("schedule", configs[2].key))
        finish_index = world.events.index(("finish", configs[0].key))
        assert finish_index < schedule_index


class TestScheduling:
    """Tests for parallel and sequential scheduling."""

    def test_parallel_triggers_whole_phase_before_waiting(self, log: Console) -> None:
        """In parallel mode every configuration is queued before the first wait."""
        world = World()
        configs = [
            FakeConfiguration(f"n={i}", world, running_polls=2) for i in range(3)
        ]

        DefaultExecutionStrategy().run(FakeExecution(configs, log))

        assert [e for e, _ in world.events[:3]] == ["schedule"] * 3
        assert world.max_outstanding == 3

    def test_sequential_keeps_one_outstanding(self, log: Console) -> None:
        """In sequential mode a configuration is queued only after the previous one finished."""
        world = World()
        configs = [
            FakeConfiguration(f"n={i}", world, queued_polls=1, running_polls=2) for i in range(3)
        ]

        DefaultExecutionStrategy(run_sequentially=True).run(FakeExecution(configs, log))

        assert world.max_outstanding == 1
        assert world.events == [
            ("schedule", "n=0"), ("finish", "n=0"),
            ("schedule", "n=1"), ("finish", "n=1"),
            ("schedule", "n=2"), ("finish", "n=2"),
        ]

    def test_results_collected_in_scheduling_order(self, log: Console) -> None:
        """Aggregators see runs in scheduling order, not completion order."""
        world = World()
        slow = FakeConfiguration("n=0", world, running_polls=5, result=Result.UNSTABLE)
        fast = FakeConfiguration("n=1", world)
        aggregator = RecordingAggregator()

        result = DefaultExecutionStrategy().run(FakeExecution([slow, fast], log, aggregators=[aggregator]))

        assert aggregator.calls == ["start_build", "end_run n=0", "end_run n=1"]
        assert result == Result.UNSTABLE

    def test_child_actions_and_cause_are_passed_on(self, log: Console) -> None:
        """Every sub-job inherits the parent's parameters and names its parent build."""
        world = World()
        config = FakeConfiguration("n=0", world)
        execution = FakeExecution([config], log, number=42, child_actions={"commit": "abc123"})

        DefaultExecutionStrategy().run(execution)

        actions, cause = config.schedule_calls[0]
        assert actions == {"commit": "abc123"}
        assert cause == UpstreamCause("kitchen", 42)
        assert actions is not execution.child_actions

    def test_sorter_orders_each_phase(self, log: Console, log_buffer: io.StringIO) -> None:
        """Configurations are triggered in the sorter's order."""
        world = World()
        configs = kitchen(world)
        axes = parse_axes({"os": ["linux", "windows"], "python": ["3.11", "3.12"]})
        strategy = DefaultExecutionStrategy(
            touchstone_filter=LINUX,
            sorter=AxisSorter(axes, order=["python", "os"], reverse=True),
        )

        strategy.run(FakeExecution(configs, log))

        assert world.keys("schedule") == [
            "os=linux,python=3.12",
            "os=linux,python=3.11",
            "os=windows,python=3.12",
            "os=windows,python=3.11",
        ]
        assert "Triggering os=linux,python=3.12" in log_buffer.getvalue()

    def test_name_sorter(self, log: Console) -> None:
        world = World()
        configs = [FakeConfiguration(f"n={n}", world) for n in ("b", "c", "a")]

        DefaultExecutionStrategy(sorter=NameSorter()).run(FakeExecution(configs, log))

        assert world.keys("schedule") == ["n=a", "n=b", "n=c"]

    def test_empty_matrix_is_success(self, log: Console) -> None:
        assert DefaultExecutionStrategy().run(FakeExecution([], log)) == Result.SUCCESS


class TestCompletionWait:
    """Tests for polling a configuration until its run completes."""

    def test_finished_run_returns_without_sleeping(self, log: Console) -> None:
        world = World()
        config = FakeConfiguration("n=0", world)
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy()
        strategy.schedule(execution, config)

        run = strategy.wait_for_completion(execution, config)

        assert run is not None
        assert run.result == Result.SUCCESS
        assert execution.sleeps == []

    def test_polls_at_fixed_interval(self, log: Console) -> None:
        world = World()
        config = FakeConfiguration("n=0", world, queued_polls=2, running_polls=3)
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy(wait=WaitSettings(interval=0.5))
        strategy.schedule(execution, config)

        run = strategy.wait_for_completion(execution, config)

        assert run is not None
        assert execution.sleeps == [0.5] * 5

    def test_four_absent_polls_are_not_a_cancellation(self, log: Console, log_buffer: io.StringIO) -> None:
        """A run that shows up on the fifth poll is still waited for."""
        world = World()
        config = FakeConfiguration("n=0", world, gap_polls=4, result=Result.UNSTABLE)
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy()
        strategy.schedule(execution, config)

        run = strategy.wait_for_completion(execution, config)

        assert run is not None
        assert run.result == Result.UNSTABLE
        assert config.polls == 5
        assert "appears to be cancelled" not in log_buffer.getvalue()

    def test_five_absent_polls_confirm_cancellation(self, log: Console, log_buffer: io.StringIO) -> None:
        """Neither run nor queue entry for five consecutive polls means cancelled."""
        world = World()
        config = FakeConfiguration("n=0", world, never_starts=True)
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy()
        strategy.schedule(execution, config)

        run = strategy.wait_for_completion(execution, config)

        assert run is None
        assert config.polls == 5
        assert len(execution.sleeps) == 4
        assert "n=0 appears to be cancelled" in log_buffer.getvalue()

    def test_confirmations_are_configurable(self, log: Console) -> None:
        world = World()
        config = FakeConfiguration("n=0", world, never_starts=True)
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy(wait=WaitSettings(cancel_confirmations=2))
        strategy.schedule(execution, config)

        assert strategy.wait_for_completion(execution, config) is None
        assert config.polls == 2

    def test_cancelled_configuration_is_aborted_without_end_run(self, log: Console) -> None:
        """A configuration that never ran counts as ABORTED and is not reported to aggregators."""
        world = World()
        gone = FakeConfiguration("n=0", world, queued_polls=2, never_starts=True)
        ok = FakeConfiguration("n=1", world)
        aggregator = RecordingAggregator()

        result = DefaultExecutionStrategy().run(FakeExecution([gone, ok], log, aggregators=[aggregator]))

        assert result == Result.ABORTED
        assert aggregator.calls == ["start_build", "end_run n=1"]

    def test_long_queue_wait_is_reported_once(self, log: Console, log_buffer: io.StringIO) -> None:
        """The blockage reason is printed after the report delay, and only when it changes."""
        world = World()
        config = FakeConfiguration("n=0", world, queued_polls=8, why="Waiting for next available executor")
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy()
        strategy.schedule(execution, config)

        _ = strategy.wait_for_completion(execution, config)

        output = log_buffer.getvalue()
        assert output.count("Configuration n=0 is still in the queue") == 1
        assert "Waiting for next available executor" in output

    def test_changed_queue_reason_is_reported_again(self, log: Console, log_buffer: io.StringIO) -> None:
        world = World()
        config = FakeConfiguration(
            "n=0",
            world,
            queued_polls=12,
            reasons=["Waiting for next available executor"] * 8 + ["Build #3 is ahead in the queue"],
        )
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy()
        strategy.schedule(execution, config)

        _ = strategy.wait_for_completion(execution, config)

        output = log_buffer.getvalue()
        assert output.count("Configuration n=0 is still in the queue") == 2
        assert output.index("Waiting for next available executor") < output.index(
            "Build #3 is ahead in the queue"
        )

    def test_run_without_result_is_still_waited_for(self, log: Console, log_buffer: io.StringIO) -> None:
        """A run that stopped building but has no result yet is not finished."""
        world = World()
        config = FakeConfiguration("n=0", world, running_polls=1, settling_polls=6, result=Result.FAILURE)
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy()
        strategy.schedule(execution, config)

        run = strategy.wait_for_completion(execution, config)

        assert run is not None
        assert run.result == Result.FAILURE
        assert config.polls == 8
        assert len(execution.sleeps) == 7
        assert "appears to be cancelled" not in log_buffer.getvalue()

    def test_short_queue_wait_is_not_reported(self, log: Console, log_buffer: io.StringIO) -> None:
        world = World()
        config = FakeConfiguration("n=0", world, queued_polls=5)
        execution = FakeExecution([config], log)
        strategy = DefaultExecutionStrategy()
        strategy.schedule(execution, config)

        _ = strategy.wait_for_completion(execution, config)

        assert "still in the queue" not in log_buffer.getvalue()

    def test_interruption_propagates(self, log: Console) -> None:
        """An interrupted sleep ends the strategy with InterruptedExecution."""
        world = World()
        config = FakeConfiguration("n=0", world, queued_polls=100)
        execution = FakeExecution([config], log, interrupt_after=3)

        with pytest.raises(InterruptedExecution) as exc_info:
            DefaultExecutionStrategy().run(execution)

        assert exc_info.value.cause == "Timed out"
        assert exc_info.value.result == Result.ABORTED


class TestAggregatorNotifications:
    """Tests for the aggregator callbacks the strategy drives."""

    def test_start_refusal_fails_without_scheduling(self, log: Console, log_buffer: io.StringIO) -> None:
        world = World()
        configs = kitchen(world)
        aggregator = RecordingAggregator(start=False)

        result = DefaultExecutionStrategy().run(FakeExecution(configs, log, aggregators=[aggregator]))

        assert result == Result.FAILURE
        assert world.events == []
        assert "refused to start" in log_buffer.getvalue()

    def test_end_run_veto_aborts_the_rest(self, log: Console) -> None:
        """An end_run veto stops the build before the next configuration is queued."""
        world = World()
        configs = [FakeConfiguration(f"n={i}", world) for i in range(3)]
        aggregator = RecordingAggregator(veto_after=1)

        with pytest.raises(AggregatorVetoError):
            DefaultExecutionStrategy(run_sequentially=True).run(
                FakeExecution(configs, log, aggregators=[aggregator])
            )

        assert world.keys("schedule") == ["n=0"]

    def test_every_aggregator_sees_every_run(self, log: Console) -> None:
        world = World()
        configs = [FakeConfiguration(f"n={i}", world) for i in range(2)]
        first, second = RecordingAggregator(), RecordingAggregator()

        DefaultExecutionStrategy().run(FakeExecution(configs, log, aggregators=[first, second]))

        assert first.calls == second.calls == ["start_build", "end_run n=0", "end_run n=1"]


class TestStrategyFactory:
    """Tests for building strategies from matrix settings."""

    def test_from_settings(self) -> None:
        settings = StrategySettings(
            run_sequentially=True,
            touchstone_filter='os == "linux"',
            touchstone_result_threshold="unstable",
            sorter="axis",
        )
        axes = parse_axes({"os": ["linux", "windows"]})
        config = MatrixRunConfig(wait_interval=0.5, cancel_confirmations=3, queue_report_delay=2.0)

        strategy = create_strategy(settings, axes, config)

        assert isinstance(strategy, DefaultExecutionStrategy)
        assert strategy.run_sequentially is True
        assert strategy.touchstone_result_threshold == Result.UNSTABLE
        assert isinstance(strategy.sorter, AxisSorter)
        assert strategy.wait == WaitSettings(interval=0.5, cancel_confirmations=3, queue_report_delay=2.0)

    def test_defaults_reject_every_touchstone(self, log: Console) -> None:
        strategy = create_strategy(StrategySettings(), [], MatrixRunConfig())
        partition = strategy.partition(FakeExecution(kitchen(World()), log))
        assert partition.touchstone == []

    def test_unknown_strategy(self) -> None:
        with pytest.raises(ValueError, match="Unknown execution strategy"):
            create_strategy(StrategySettings(type="random"), [], MatrixRunConfig())

    def test_registry(self) -> None:
        assert STRATEGIES["classic"] is DefaultExecutionStrategy

    def test_result_of_missing_run(self) -> None:
        assert result_of(None) == Result.ABORTED


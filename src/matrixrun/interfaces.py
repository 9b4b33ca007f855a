# Copyright (c) Syntropy Systems
"""Interfaces between the execution strategy and the job queue.

The strategy never talks to the database directly. It sees configurations
that can be scheduled and asked for their run or queue entry, which keeps
it testable against scripted fakes.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from typing_extensions import Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

    from rich.console import Console

    from matrixrun.aggregators import Aggregator
    from matrixrun.axes import Combination
    from matrixrun.filters import Filter
    from matrixrun.result import Result


@dataclass(frozen=True)
class UpstreamCause:
    """Links a sub-job to the parent build that triggered it."""

    project: str
    build_number: int

    def __str__(self) -> str:
        return f"Started by upstream project {self.project} build number {self.build_number}"


class CauseOfBlockage(Protocol):
    """Printable explanation of why a queue entry is not running yet."""

    def print(self, log: Console) -> None: ...


class QueueItem(Protocol):
    """A pending (not yet started) sub-job."""

    @property
    def why(self) -> Optional[str]: ...

    @property
    def cause_of_blockage(self) -> CauseOfBlockage: ...

    @property
    def parent_build(self) -> Optional[int]: ...

    def cancel(self) -> bool: ...


class Run(Protocol):
    """A sub-job execution of one configuration for one parent build."""

    @property
    def combination(self) -> Combination: ...

    @property
    def number(self) -> int: ...

    @property
    def is_building(self) -> bool: ...

    @property
    def result(self) -> Optional[Result]: ...

    def interrupt(self) -> bool: ...


class Configuration(Protocol):
    """A schedulable point of the matrix."""

    @property
    def combination(self) -> Combination: ...

    def schedule_build(self, actions: dict[str, str], cause: UpstreamCause) -> bool: ...

    def get_build_by_number(self, number: int) -> Optional[Run]: ...

    def get_queue_item(self, number: int) -> Optional[QueueItem]: ...

    def queue_items(self) -> list[QueueItem]: ...


class BuildContext(Protocol):
    """What the execution strategy needs from the build it runs for."""

    @property
    def number(self) -> int: ...

    @property
    def project_name(self) -> str: ...

    @property
    def active_configurations(self) -> Sequence[Configuration]: ...

    @property
    def aggregators(self) -> Sequence[Aggregator]: ...

    @property
    def combination_filter(self) -> Filter: ...

    @property
    def child_actions(self) -> dict[str, str]: ...

    @property
    def log(self) -> Console: ...

    def should_build(self, configuration: Configuration) -> bool: ...

    def sleep(self, seconds: float) -> None: ...

    def clock(self) -> float: ...

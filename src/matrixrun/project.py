# Copyright (c) Syntropy Systems
"""Matrix projects: a matrix definition resolved against the registries."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from matrixrun.aggregators import Aggregatable, create_aggregatable
from matrixrun.axes import Axis, Combination, generate_combinations
from matrixrun.config import MatrixRunConfig
from matrixrun.filters import ACCEPT_ALL, Filter, parse_filter
from matrixrun.models.matrix import MatrixDefinition
from matrixrun.queue import MatrixConfiguration
from matrixrun.strategy import ExecutionStrategy, create_strategy

if TYPE_CHECKING:
    from matrixrun.queue import JobQueue


class MatrixProject:
    """A loaded, validated matrix project.

    Everything that can be checked before a build starts is checked here:
    filter syntax, sorter axes, registry names.
    """

    definition: MatrixDefinition
    axes: list[Axis]
    combination_filter: Filter
    strategy: ExecutionStrategy
    aggregatables: list[Aggregatable]
    workdir: Path

    def __init__(
        self,
        definition: MatrixDefinition,
        config: Optional[MatrixRunConfig] = None,
        workdir: Optional[Path] = None,
    ) -> None:
        self.definition = definition
        self.config = config or MatrixRunConfig()
        self.workdir = (workdir or Path.cwd()).resolve()
        self.axes = definition.axis_list
        self.combination_filter = parse_filter(definition.combination_filter, ACCEPT_ALL)
        self.strategy = create_strategy(definition.strategy, self.axes, self.config)
        self.aggregatables = [
            create_aggregatable(entry.name, entry.options) for entry in definition.aggregators
        ]

    @classmethod
    def load(cls, path: Path, config: Optional[MatrixRunConfig] = None) -> MatrixProject:
        """Load a project from a matrix YAML file; sub-jobs run next to it."""
        definition = MatrixDefinition.from_yaml(path)
        return cls(definition, config=config, workdir=path.resolve().parent)

    @property
    def name(self) -> str:
        return self.definition.name

    def combinations(self) -> list[Combination]:
        return list(generate_combinations(self.axes))

    def active_configurations(self, queue: JobQueue) -> list[MatrixConfiguration]:
        """Snapshot of every configuration of the matrix, in grid order."""
        return [
            MatrixConfiguration(
                combination,
                queue,
                program=self.definition.program,
                workdir=str(self.workdir),
            )
            for combination in self.combinations()
        ]

    def check_combinations(self, keys: list[str]) -> list[str]:
        """Validate ``--only`` keys and return them in canonical form."""
        known = {c.key for c in self.combinations()}
        canonical: list[str] = []
        for key in keys:
            combination = Combination.from_key(key)
            # Accept axes in any order
            ordered = Combination({axis.name: combination[axis.name] for axis in self.axes if axis.name in combination})
            if len(ordered) != len(combination) or ordered.key not in known:
                msg = f"'{key}' is not a combination of this matrix"
                raise ValueError(msg)
            canonical.append(ordered.key)
        return canonical

# Copyright (c) Syntropy Systems
"""Pydantic models for the matrix definition file."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, cast

import yaml
from pydantic import Field, field_validator

from matrixrun.axes import Axis, parse_axes
from matrixrun.result import Result

from .base import JSONObject, JSONValue, StrictModel


class StrategySettings(StrictModel):
    """Execution strategy policy, fixed for the duration of one build."""

    type: str = "classic"
    run_sequentially: bool = False
    touchstone_filter: Optional[str] = None
    touchstone_result_threshold: Optional[Result] = None
    sorter: Optional[str] = None
    sorter_options: JSONObject = Field(default_factory=dict)

    @field_validator("touchstone_result_threshold", mode="before")
    @classmethod
    def _parse_threshold(cls, value: object) -> Optional[Result]:
        if value is None or isinstance(value, Result):
            return value
        return Result.from_name(str(value))


class AggregatorSpec(StrictModel):
    """An aggregator entry: registry name plus options."""

    name: str
    options: JSONObject = Field(default_factory=dict)


class MatrixDefinition(StrictModel):
    """A matrix project as written in ``matrix.yaml``.

    Example::

        name: kitchen
        program: python run_suite.py
        axes:
          os: [linux, windows]
          python: ["3.11", "3.12"]
        combination_filter: not (os == "windows" and python == "3.11")
        strategy:
          run_sequentially: false
          touchstone_filter: os == "linux"
          touchstone_result_threshold: unstable
          sorter: axis
        aggregators:
          - summary
          - fail-fast: {max_failures: 2}
    """

    name: str
    program: str
    axes: dict[str, list[JSONValue]]
    combination_filter: Optional[str] = None
    strategy: StrategySettings = Field(default_factory=StrategySettings)
    aggregators: list[AggregatorSpec] = Field(default_factory=list)

    @field_validator("axes")
    @classmethod
    def _check_axes(cls, value: dict[str, list[JSONValue]]) -> dict[str, list[JSONValue]]:
        if not value:
            msg = "Matrix definition must declare at least one axis"
            raise ValueError(msg)
        # Raises on empty or duplicate values
        _ = parse_axes(value)
        return value

    @field_validator("aggregators", mode="before")
    @classmethod
    def _parse_aggregators(cls, value: object) -> object:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        specs: list[object] = []
        for entry in cast("list[object]", value):
            if isinstance(entry, str):
                specs.append({"name": entry})
            elif isinstance(entry, dict) and "name" not in entry and len(entry) == 1:
                name, options = next(iter(cast("dict[str, object]", entry).items()))
                specs.append({"name": name, "options": options or {}})
            else:
                specs.append(entry)
        return specs

    @property
    def axis_list(self) -> list[Axis]:
        return parse_axes(self.axes)

    @classmethod
    def from_yaml(cls, path: Path) -> MatrixDefinition:
        """Load a matrix definition from a YAML file."""
        with path.open() as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            msg = f"Matrix definition {path} must be a mapping"
            raise ValueError(msg)
        data = cast("dict[str, object]", data)
        if "program" not in data:
            msg = "Matrix definition must have 'program' field"
            raise ValueError(msg)
        if "axes" not in data:
            msg = "Matrix definition must have 'axes' field"
            raise ValueError(msg)
        if "name" not in data:
            data["name"] = path.stem

        return cls.model_validate(data)

# Copyright (c) Syntropy Systems
"""Axes, combinations and sub-job command generation."""
from __future__ import annotations

import itertools
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from matrixrun.models.base import JSONValue

SCI_NOTATION_THRESHOLD = 1e-4


def format_axis_value(value: JSONValue) -> str:
    """Format an axis value the way it appears on the command line."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        # Use scientific notation for very small values
        if abs(value) < SCI_NOTATION_THRESHOLD and value != 0.0:
            return f"{value:.2e}"
        return str(value)
    return str(value)


class Combination(Mapping[str, str]):
    """One point in the combinatorial space: axis name -> value.

    Immutable and hashable; axis order is preserved and is part of the
    identity, as is every value.
    """

    __slots__ = ("_items",)

    _items: tuple[tuple[str, str], ...]

    def __init__(self, values: Mapping[str, JSONValue] | None = None, **kwargs: JSONValue) -> None:
        merged = dict(values or {})
        merged.update(kwargs)
        self._items = tuple((str(k), format_axis_value(v)) for k, v in merged.items())

    @classmethod
    def from_key(cls, key: str) -> Combination:
        """Parse a canonical key such as ``os=linux,python=3.11``."""
        values: dict[str, str] = {}
        for part in key.split(","):
            part = part.strip()
            if not part:
                continue
            name, sep, value = part.partition("=")
            if not sep or not name:
                msg = f"Invalid combination '{key}': expected axis=value pairs"
                raise ValueError(msg)
            values[name.strip()] = value.strip()
        return cls(values)

    @property
    def key(self) -> str:
        """Canonical string form, also used as the database identity."""
        return ",".join(f"{k}={v}" for k, v in self._items)

    def __getitem__(self, name: str) -> str:
        for k, v in self._items:
            if k == name:
                return v
        raise KeyError(name)

    def __iter__(self) -> Iterator[str]:
        return (k for k, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self) -> int:
        return hash(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Combination):
            return self._items == other._items
        return NotImplemented

    def __repr__(self) -> str:
        return f"Combination({self.key!r})"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Axis:
    """A named axis and its values."""

    name: str
    values: tuple[str, ...]

    def index_of(self, value: str) -> int:
        """Position of a value on this axis, or len(values) if unknown."""
        try:
            return self.values.index(value)
        except ValueError:
            return len(self.values)


def parse_axes(raw: Mapping[str, list[JSONValue]]) -> list[Axis]:
    """Build axes from the ``axes:`` mapping of a matrix definition.

    Names and values must survive the ``axis=value,...`` key format, so
    commas are rejected everywhere and ``=`` in names.
    """
    axes: list[Axis] = []
    for name, values in raw.items():
        if not name or name != name.strip() or "," in name or "=" in name:
            msg = (
                f"Invalid axis name '{name}': must be non-empty, "
                "without ',', '=' or surrounding spaces"
            )
            raise ValueError(msg)
        if not values:
            msg = f"Axis '{name}' must have at least one value"
            raise ValueError(msg)
        formatted = tuple(format_axis_value(v) for v in values)
        for value in formatted:
            if "," in value or value != value.strip():
                msg = (
                    f"Invalid value '{value}' on axis '{name}': "
                    "must not contain ',' or surrounding spaces"
                )
                raise ValueError(msg)
        if len(set(formatted)) != len(formatted):
            msg = f"Axis '{name}' has duplicate values"
            raise ValueError(msg)
        axes.append(Axis(name=name, values=formatted))
    return axes


def generate_combinations(axes: list[Axis]) -> Iterator[Combination]:
    """Generate every combination of the axes (grid order)."""
    names = [axis.name for axis in axes]
    for combo in itertools.product(*(axis.values for axis in axes)):
        yield Combination(dict(zip(names, combo)))


def build_command(program: str, combination: Combination) -> list[str]:
    """Build the sub-job argv: the program plus ``--axis value`` per axis."""
    command = program.split()
    for name, value in combination.items():
        command.extend([f"--{name}", value])
    return command


def axis_env(combination: Combination) -> dict[str, str]:
    """Environment variables exposing a combination to the sub-job."""
    return {
        f"MATRIXRUN_AXIS_{name.upper().replace('-', '_')}": value
        for name, value in combination.items()
    }

# Copyright (c) Syntropy Systems
"""Configuration sorters: the order in which configurations are triggered."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, TypeVar, cast

if TYPE_CHECKING:
    from collections.abc import Iterable

    from matrixrun.axes import Axis
    from matrixrun.interfaces import Configuration
    from matrixrun.models.base import JSONObject

C = TypeVar("C", bound="Configuration")


class ConfigurationSorter:
    """Orders configurations before they are scheduled.

    Sorting is stable: configurations with equal keys keep the order of the
    active configuration set, and none is ever dropped.
    """

    reverse: bool = False

    def sort_key(self, configuration: Configuration) -> Any:
        raise NotImplementedError

    def validate(self, axes: list[Axis]) -> None:
        """Raise ValueError if the sorter cannot be used with these axes."""

    def sort(self, configurations: Iterable[C]) -> list[C]:
        return sorted(configurations, key=self.sort_key, reverse=self.reverse)

    @classmethod
    def from_options(cls, options: JSONObject, axes: list[Axis]) -> ConfigurationSorter:
        raise NotImplementedError


class AxisSorter(ConfigurationSorter):
    """Sort by axis values, in the order they are declared.

    ``axes`` picks and orders the axes that take part in the key; by default
    every axis is used in declaration order.
    """

    def __init__(self, axes: list[Axis], order: Optional[list[str]] = None, reverse: bool = False) -> None:
        self.axes = axes
        self.order = order if order is not None else [axis.name for axis in axes]
        self.reverse = reverse
        self._by_name = {axis.name: axis for axis in axes}

    def validate(self, axes: list[Axis]) -> None:
        names = {axis.name for axis in axes}
        unknown = [name for name in self.order if name not in names]
        if unknown:
            msg = f"Sorter refers to unknown axes: {', '.join(unknown)}"
            raise ValueError(msg)

    def sort_key(self, configuration: Configuration) -> tuple[int, ...]:
        combination = configuration.combination
        return tuple(
            self._by_name[name].index_of(combination.get(name, ""))
            for name in self.order
        )

    @classmethod
    def from_options(cls, options: JSONObject, axes: list[Axis]) -> AxisSorter:
        order = options.get("axes")
        if order is not None and not isinstance(order, list):
            msg = "Sorter option 'axes' must be a list of axis names"
            raise ValueError(msg)
        return cls(
            axes,
            order=[str(name) for name in cast("list[object]", order)] if order is not None else None,
            reverse=bool(options.get("reverse", False)),
        )


class NameSorter(ConfigurationSorter):
    """Sort by the canonical combination key."""

    def __init__(self, reverse: bool = False) -> None:
        self.reverse = reverse

    def sort_key(self, configuration: Configuration) -> str:
        return configuration.combination.key

    @classmethod
    def from_options(cls, options: JSONObject, axes: list[Axis]) -> NameSorter:
        return cls(reverse=bool(options.get("reverse", False)))


SORTERS: dict[str, type[ConfigurationSorter]] = {
    "axis": AxisSorter,
    "name": NameSorter,
}


def create_sorter(name: str, options: JSONObject, axes: list[Axis]) -> ConfigurationSorter:
    """Look up a sorter by registry name, configure and validate it."""
    try:
        sorter_cls = SORTERS[name]
    except KeyError:
        msg = f"Unknown sorter '{name}' (available: {', '.join(sorted(SORTERS))})"
        raise ValueError(msg) from None
    sorter = sorter_cls.from_options(options, axes)
    sorter.validate(axes)
    return sorter

# Copyright (c) Syntropy Systems
"""Build result severities."""
from __future__ import annotations

from enum import Enum
from functools import reduce
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from collections.abc import Iterable


class Result(Enum):
    """Outcome of a build, ordered from best to worst.

    The declaration order is the severity order, so ``combine`` is simply
    the worse of two values.
    """

    SUCCESS = 0
    UNSTABLE = 1
    FAILURE = 2
    NOT_BUILT = 3
    ABORTED = 4

    def combine(self, other: Result) -> Result:
        """Return the worse of the two results."""
        return self if self.value >= other.value else other

    def is_worse_than(self, other: Result) -> bool:
        return self.value > other.value

    def is_better_or_equal(self, other: Result) -> bool:
        return self.value <= other.value

    @property
    def style(self) -> str:
        """Rich style used when printing this result."""
        return _STYLES[self]

    @classmethod
    def worst(cls) -> Result:
        return cls.ABORTED

    @classmethod
    def from_name(cls, name: str) -> Result:
        """Parse a result name such as ``"unstable"`` (case-insensitive)."""
        key = name.strip().upper().replace("-", "_")
        try:
            return cls[key]
        except KeyError:
            valid = ", ".join(r.name for r in cls)
            msg = f"Unknown result '{name}' (expected one of: {valid})"
            raise ValueError(msg) from None

    @classmethod
    def from_exit_code(
        cls,
        exit_code: int,
        unstable_exit_code: Optional[int] = None,
    ) -> Result:
        """Map a sub-job process exit code to a result."""
        if exit_code == 0:
            return cls.SUCCESS
        if unstable_exit_code is not None and exit_code == unstable_exit_code:
            return cls.UNSTABLE
        return cls.FAILURE

    def __str__(self) -> str:
        return self.name


_STYLES = {
    Result.SUCCESS: "green",
    Result.UNSTABLE: "yellow",
    Result.FAILURE: "red",
    Result.NOT_BUILT: "dim",
    Result.ABORTED: "dim",
}


def combine_all(results: Iterable[Result]) -> Result:
    """Fold results with ``combine``; an empty iterable is SUCCESS."""
    return reduce(Result.combine, results, Result.SUCCESS)

# Copyright (c) Syntropy Systems
"""Exceptions raised while running a matrix build."""
from __future__ import annotations

from matrixrun.result import Result


class MatrixRunError(Exception):
    """Base class for matrixrun errors."""


class AbortError(MatrixRunError):
    """Abort the build with FAILURE.

    The message is the one-line explanation printed to the build log.
    """


class FilterEvaluationError(AbortError):
    """A combination filter could not be evaluated."""


class AggregatorVetoError(AbortError):
    """An aggregator refused to let the build continue."""

    def __init__(self, message: str = "Aborted by aggregator") -> None:
        super().__init__(message)


class InterruptedExecution(MatrixRunError):
    """The coordinating thread was interrupted while waiting.

    Carries the cause (operator cancel, timeout, signal) and the result the
    interrupted build should end with.
    """

    cause: str
    result: Result

    def __init__(self, cause: str = "interrupted", result: Result = Result.ABORTED) -> None:
        super().__init__(cause)
        self.cause = cause
        self.result = result

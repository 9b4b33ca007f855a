"""
matrixrun - Matrix build orchestration.

Fan a build out over every combination of a set of axes, gate the bulk of
it on a few touchstone combinations, and fold the results into one.
"""

from matrixrun.build import BuildExecution, MatrixBuild
from matrixrun.result import Result
from matrixrun.strategy import DefaultExecutionStrategy, ExecutionStrategy

__version__ = "0.1.0"
__all__ = [
    "BuildExecution",
    "DefaultExecutionStrategy",
    "ExecutionStrategy",
    "MatrixBuild",
    "Result",
    "__version__",
]

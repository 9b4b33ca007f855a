# Copyright (c) Syntropy Systems
"""Combination filters.

A filter is a predicate over a combination. The execution strategy treats
filters as opaque: the only failure it understands is
``FilterEvaluationError``.

Expressions are a safe subset of Python boolean expressions, with axis names
bound to their (string) values::

    os == "linux" and python in ("3.11", "3.12")
    not (os == "windows" and arch == "arm64")
"""
from __future__ import annotations

import ast
import operator
from typing import TYPE_CHECKING, Any, Callable, Optional

from matrixrun.errors import FilterEvaluationError

if TYPE_CHECKING:
    from collections.abc import Mapping


class Filter:
    """Predicate deciding whether a combination takes part in a build."""

    def accept(self, context: object, combination: Mapping[str, str]) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class _ConstantFilter(Filter):
    def __init__(self, value: bool, name: str) -> None:
        self._value = value
        self._name = name

    def accept(self, context: object, combination: Mapping[str, str]) -> bool:
        return self._value

    def __repr__(self) -> str:
        return self._name


ACCEPT_ALL: Filter = _ConstantFilter(True, "ACCEPT_ALL")
REJECT_ALL: Filter = _ConstantFilter(False, "REJECT_ALL")


_COMPARISONS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.List,
    ast.Tuple,
    ast.Set,
    *_COMPARISONS,
)


class ExpressionFilter(Filter):
    """Filter backed by a boolean expression over axis names."""

    expression: str
    _tree: ast.Expression

    def __init__(self, expression: str) -> None:
        self.expression = expression.strip()
        try:
            tree = ast.parse(self.expression, mode="eval")
        except SyntaxError as e:
            msg = f"Invalid filter expression '{self.expression}': {e.msg}"
            raise ValueError(msg) from e

        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                msg = (
                    f"Invalid filter expression '{self.expression}': "
                    f"{type(node).__name__} is not allowed"
                )
                raise ValueError(msg)
        self._tree = tree

    def accept(self, context: object, combination: Mapping[str, str]) -> bool:
        try:
            return bool(self._eval(self._tree.body, combination))
        except FilterEvaluationError:
            raise
        except TypeError as e:
            msg = f"Filter '{self.expression}' failed on {_describe(combination)}: {e}"
            raise FilterEvaluationError(msg) from e

    def _eval(self, node: ast.AST, values: Mapping[str, str]) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._eval(v, values) for v in node.values)
            return any(self._eval(v, values) for v in node.values)
        if isinstance(node, ast.UnaryOp):
            return not self._eval(node.operand, values)
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, values)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, values)
                if not _COMPARISONS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.Name):
            if node.id not in values:
                msg = (
                    f"Filter '{self.expression}' references unknown axis "
                    f"'{node.id}' (combination {_describe(values)})"
                )
                raise FilterEvaluationError(msg)
            return values[node.id]
        if isinstance(node, ast.Constant):
            # Axis values are strings; compare numbers by their text form
            if isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
                return str(node.value)
            return node.value
        if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
            return [self._eval(e, values) for e in node.elts]
        msg = f"Unsupported expression node: {type(node).__name__}"
        raise FilterEvaluationError(msg)

    def __repr__(self) -> str:
        return f"ExpressionFilter({self.expression!r})"


def parse_filter(expression: Optional[str], default: Filter) -> Filter:
    """Compile an expression, or return ``default`` when it is empty."""
    if expression is None or not expression.strip():
        return default
    return ExpressionFilter(expression)


def _describe(combination: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in combination.items())

# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for matrixrun."""

from __future__ import annotations

from typing import ClassVar, Union

from pydantic import BaseModel, ConfigDict, JsonValue
from typing_extensions import TypeAlias

JSONPrimitive: TypeAlias = Union[str, int, float, bool, None]
JSONValue: TypeAlias = JsonValue
JSONObject: TypeAlias = dict[str, JSONValue]


class MatrixRunModel(BaseModel):
    """Base model with shared config for matrixrun schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class StrictModel(BaseModel):
    """Base model for user-written files: unknown keys are an error."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        frozen=True,
    )

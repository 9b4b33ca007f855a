# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Optional, cast

from pydantic import Field, TypeAdapter, field_validator

from matrixrun.axes import Combination
from matrixrun.result import Result

from .base import JSONObject, MatrixRunModel

_LIST_STR_ADAPTER = TypeAdapter(list[str])
_DICT_STR_ADAPTER = TypeAdapter(dict[str, str])
_JSON_OBJECT_ADAPTER = TypeAdapter(JSONObject)


def _parse_result(value: object) -> Optional[Result]:
    if value is None:
        return None
    if isinstance(value, Result):
        return value
    return Result.from_name(cast(str, value))


class JobRecord(MatrixRunModel):
    """Database job record: one scheduled sub-job of a parent build."""

    id: int
    project: str
    build_number: int
    combination: str
    name: Optional[str] = None
    command_argv: list[str] = Field(default_factory=list)
    workdir: str
    parameters: dict[str, str] = Field(default_factory=dict)
    status: str
    result: Optional[Result] = None
    attempt: int = 1
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    worker_id: Optional[str] = None
    heartbeat_at: Optional[str] = None
    pid: Optional[int] = None
    pgid: Optional[int] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    cancel_requested_at: Optional[str] = None
    run_dir: Optional[str] = None

    @property
    def parsed_combination(self) -> Combination:
        return Combination.from_key(self.combination)

    @field_validator("command_argv", mode="before")
    @classmethod
    def _parse_command_argv(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return _LIST_STR_ADAPTER.validate_json(value)
        return cast("list[str]", value)

    @field_validator("parameters", mode="before")
    @classmethod
    def _parse_parameters(cls, value: object) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, str):
            return _DICT_STR_ADAPTER.validate_json(value)
        return cast("dict[str, str]", value)

    @field_validator("result", mode="before")
    @classmethod
    def _parse_result(cls, value: object) -> Optional[Result]:
        return _parse_result(value)


class BuildRecord(MatrixRunModel):
    """Database record of a parent (matrix) build."""

    number: int
    project: str
    status: str
    result: Optional[Result] = None
    parameters: dict[str, str] = Field(default_factory=dict)
    only: Optional[list[str]] = None
    base_build: Optional[int] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    interrupt_requested_at: Optional[str] = None
    interrupt_cause: Optional[str] = None
    summary: Optional[JSONObject] = None

    @field_validator("parameters", mode="before")
    @classmethod
    def _parse_parameters(cls, value: object) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, str):
            return _DICT_STR_ADAPTER.validate_json(value)
        return cast("dict[str, str]", value)

    @field_validator("only", mode="before")
    @classmethod
    def _parse_only(cls, value: object) -> Optional[list[str]]:
        if value is None:
            return None
        if isinstance(value, str):
            return _LIST_STR_ADAPTER.validate_json(value)
        return cast("list[str]", value)

    @field_validator("summary", mode="before")
    @classmethod
    def _parse_summary(cls, value: object) -> Optional[JSONObject]:
        if value is None:
            return None
        if isinstance(value, str):
            return _JSON_OBJECT_ADAPTER.validate_json(value)
        return cast("JSONObject", value)

    @field_validator("result", mode="before")
    @classmethod
    def _parse_result(cls, value: object) -> Optional[Result]:
        return _parse_result(value)


class WorkerRecord(MatrixRunModel):
    """Database worker record."""

    id: str
    pid: Optional[int] = None
    hostname: Optional[str] = None
    gpu_index: Optional[int] = None
    status: str
    current_job_id: Optional[int] = None
    started_at: Optional[str] = None
    last_heartbeat: Optional[str] = None

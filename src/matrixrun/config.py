# Copyright (c) Syntropy Systems
"""Configuration management for matrixrun."""
from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, cast

import yaml

DIR_NAME = ".matrixrun"


@dataclass
class MatrixRunConfig:
    """Configuration for matrixrun."""

    # Heartbeat interval in seconds
    heartbeat_interval: int = 30

    # Timeout for considering a worker dead (seconds)
    heartbeat_timeout: int = 120

    # Grace period before SIGKILL after SIGTERM (seconds)
    kill_grace_period: int = 10

    # Poll interval for worker when no jobs available (seconds)
    poll_interval: int = 5

    # Poll interval of the build while waiting for a configuration (seconds)
    wait_interval: float = 1.0

    # Consecutive "no run and no queue entry" observations before a
    # configuration is considered cancelled
    cancel_confirmations: int = 5

    # Seconds a configuration may sit in the queue before its blockage is reported
    queue_report_delay: float = 5.0

    # Exit code a sub-job uses to report an UNSTABLE result
    unstable_exit_code: Optional[int] = None

    def to_dict(self) -> dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_INT_FIELDS = (
    "heartbeat_interval",
    "heartbeat_timeout",
    "kill_grace_period",
    "poll_interval",
    "cancel_confirmations",
)
_FLOAT_FIELDS = ("wait_interval", "queue_report_delay")


def find_matrixrun_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .matrixrun directory by walking up from start_path.

    Returns None if no .matrixrun directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        matrixrun_dir = current / DIR_NAME
        if matrixrun_dir.is_dir():
            return matrixrun_dir
        current = current.parent

    # Check root
    matrixrun_dir = current / DIR_NAME
    if matrixrun_dir.is_dir():
        return matrixrun_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global matrixrun config directory (~/.matrixrun)."""
    return Path.home() / DIR_NAME


def load_config(matrixrun_dir: Path | None = None) -> MatrixRunConfig:
    """Load configuration from .matrixrun/config.yaml or defaults.

    Looks for config in:
    1. Provided matrixrun_dir
    2. Nearest .matrixrun directory walking up
    3. ~/.matrixrun/config.yaml
    4. Defaults
    """
    config = MatrixRunConfig()

    config_path = None

    if matrixrun_dir is not None:
        config_path = matrixrun_dir / "config.yaml"
    else:
        found_dir = find_matrixrun_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        for name in _INT_FIELDS:
            value = data.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(config, name, int(value))
        for name in _FLOAT_FIELDS:
            value = data.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(config, name, float(value))
        unstable_exit_code = data.get("unstable_exit_code")
        if isinstance(unstable_exit_code, int) and not isinstance(unstable_exit_code, bool):
            config.unstable_exit_code = unstable_exit_code

    return config


def get_db_path(matrixrun_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if matrixrun_dir is None:
        matrixrun_dir = require_matrixrun_dir()
    return matrixrun_dir / "matrixrun.db"


def get_runs_dir(matrixrun_dir: Path | None = None) -> Path:
    """Get the path to the runs directory."""
    if matrixrun_dir is None:
        matrixrun_dir = require_matrixrun_dir()
    return matrixrun_dir / "runs"


def require_matrixrun_dir() -> Path:
    """Get matrixrun directory or raise an error if not found."""
    matrixrun_dir = find_matrixrun_dir()
    if matrixrun_dir is None:
        msg = "No .matrixrun directory found. Run 'matrixrun init' first."
        raise RuntimeError(
            msg
        )
    return matrixrun_dir

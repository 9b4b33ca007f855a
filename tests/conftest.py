# Copyright (c) Syntropy Systems
"""Pytest fixtures for matrixrun tests."""

import io
import os
import sqlite3
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
from rich.console import Console

# Store original cwd at module load time
_original_cwd = Path.cwd()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def matrixrun_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary matrixrun project directory."""
    from matrixrun.db import init_db

    matrixrun_dir = temp_dir / ".matrixrun"
    matrixrun_dir.mkdir()
    runs_dir = matrixrun_dir / "runs"
    runs_dir.mkdir()

    # Initialize database
    db_path = matrixrun_dir / "matrixrun.db"
    init_db(db_path)

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_path(matrixrun_project: Path) -> Path:
    """Path of the test project's database."""
    return matrixrun_project / ".matrixrun" / "matrixrun.db"


@pytest.fixture
def db_connection(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from matrixrun.db import get_connection

    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def log_buffer() -> io.StringIO:
    """Text written to the build log."""
    return io.StringIO()


@pytest.fixture
def log(log_buffer: io.StringIO) -> Console:
    """A build log console that records into ``log_buffer``."""
    return Console(file=log_buffer, width=200, color_system=None, force_terminal=False)

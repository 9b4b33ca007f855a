# Copyright (c) Syntropy Systems
"""matrixrun init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from matrixrun.config import DIR_NAME, MatrixRunConfig
from matrixrun.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new matrixrun project.

    Creates a .matrixrun directory with configuration and database.
    """
    target = path.resolve()
    matrixrun_dir = target / DIR_NAME

    if matrixrun_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {matrixrun_dir}")
        return

    matrixrun_dir.mkdir(parents=True)
    runs_dir = matrixrun_dir / "runs"
    runs_dir.mkdir()

    config_path = matrixrun_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(MatrixRunConfig().to_dict(), f, default_flow_style=False)

    db_path = matrixrun_dir / "matrixrun.db"
    init_db(db_path)

    console.print(f"[green]Initialized matrixrun project:[/green] {matrixrun_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]runs:[/dim] {runs_dir}")

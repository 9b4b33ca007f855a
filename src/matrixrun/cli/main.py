# Copyright (c) Syntropy Systems
"""Main CLI entry point for matrixrun."""

import typer

from matrixrun.cli.build import build
from matrixrun.cli.cancel import cancel
from matrixrun.cli.init_cmd import init
from matrixrun.cli.status import status
from matrixrun.cli.worker import worker

app = typer.Typer(
    name="matrixrun",
    help=(
        "Matrix build orchestration. Expand axes into configurations, "
        "gate on touchstones, fan sub-jobs out to workers."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(build)
_ = app.command()(status)
_ = app.command()(worker)
_ = app.command()(cancel)


if __name__ == "__main__":
    app()

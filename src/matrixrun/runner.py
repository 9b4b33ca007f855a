# Copyright (c) Syntropy Systems
"""Sub-job process runner with orphan prevention."""
from __future__ import annotations

import contextlib
import ctypes
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import IO, TYPE_CHECKING, Optional

from matrixrun.axes import axis_env
from matrixrun.result import Result

if TYPE_CHECKING:
    from matrixrun.models.db import JobRecord


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so the sub-job dies when the worker dies.

    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


def sub_job_env(job: JobRecord, run_dir: Path) -> dict[str, str]:
    """Environment variables describing a sub-job to its process."""
    env = {
        "MATRIXRUN_PROJECT": job.project,
        "MATRIXRUN_BUILD": str(job.build_number),
        "MATRIXRUN_JOB_ID": str(job.id),
        "MATRIXRUN_COMBINATION": job.combination,
        "MATRIXRUN_RUN_DIR": str(run_dir),
    }
    env.update(axis_env(job.parsed_combination))
    for name, value in job.parameters.items():
        env[f"MATRIXRUN_PARAM_{name.upper().replace('-', '_')}"] = value
    return env


class SubJobRunner:
    """Runs one sub-job command in its own process group.

    - start_new_session=True gives a process group that can be killed whole
    - PDEATHSIG on Linux prevents orphans if the worker crashes
    - stdout/stderr go to ``output.log`` in the run directory
    - ``kill`` escalates from SIGTERM to SIGKILL and marks the run ABORTED
    """

    command_argv: list[str]
    workdir: Path
    run_dir: Path
    output_path: Path
    env: dict[str, str]
    killed: bool
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _output_file: IO[str] | None

    def __init__(
        self,
        command_argv: list[str],
        workdir: Path,
        run_dir: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_argv = command_argv
        self.workdir = workdir
        self.run_dir = run_dir
        self.output_path = run_dir / "output.log"

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self.killed = False
        self._process = None
        self._exit_code = None
        self._output_file = None

    @classmethod
    def for_job(cls, job: JobRecord, run_dir: Path) -> SubJobRunner:
        return cls(
            command_argv=job.command_argv,
            workdir=Path(job.workdir),
            run_dir=run_dir,
            env=sub_job_env(job, run_dir),
        )

    def start(self) -> None:
        """Start the sub-job process."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._output_file = self.output_path.open("w")

        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.command_argv,
                stdout=self._output_file,
                stderr=subprocess.STDOUT,
                env=self.env,
                cwd=str(self.workdir),
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
            )
        except OSError:
            self._cleanup()
            raise

    def poll(self) -> int | None:
        """Return the exit code if finished, None while still running."""
        if self._process is None:
            return self._exit_code

        code = self._process.poll()
        if code is not None:
            self._finish(code)
        return code

    def wait(self) -> int:
        """Wait for the process to finish and return its exit code."""
        if self._process is None:
            return self._exit_code or 0

        return self._finish(self._process.wait())

    def kill(self, grace_period: float = 10.0) -> int:
        """Terminate the whole process group.

        Sends SIGTERM, waits up to ``grace_period`` seconds, then SIGKILL.
        Returns the exit code (negative signal number if killed).
        """
        if self._process is None:
            return self._exit_code or 0

        if self._process.poll() is not None:
            return self._finish(self._process.returncode)

        self.killed = True
        self._signal_group(signal.SIGTERM)
        try:
            return self._finish(self._process.wait(timeout=grace_period))
        except subprocess.TimeoutExpired:
            pass

        self._signal_group(signal.SIGKILL)
        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)
        return self._finish(self._process.returncode or -signal.SIGKILL)

    def _signal_group(self, sig: signal.Signals) -> None:
        # The session leader's pid is the process group id
        assert self._process is not None
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(self._process.pid, sig)

    def _finish(self, exit_code: int) -> int:
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def result(self, unstable_exit_code: Optional[int] = None) -> Optional[Result]:
        """Result of the finished sub-job, None while it is still running."""
        if self._exit_code is None:
            return None
        if self.killed:
            return Result.ABORTED
        return Result.from_exit_code(self._exit_code, unstable_exit_code)

    def _cleanup(self) -> None:
        if self._output_file:
            with contextlib.suppress(Exception):
                self._output_file.close()
            self._output_file = None

    @property
    def pid(self) -> int | None:
        if self._process is None:
            return None
        return self._process.pid

    @property
    def pgid(self) -> int | None:
        if self._process is None:
            return None
        try:
            return os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            return None

    @property
    def is_running(self) -> bool:
        if self._process is None:
            return False
        return self._process.poll() is None

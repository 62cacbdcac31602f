# Copyright (c) Syntropy Systems
"""External tool runner with process-group cleanup and wall-clock timeouts."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import shlex
import signal
import subprocess
import sys
import time
from typing import IO, TYPE_CHECKING

from flakefix.errors import ExternalToolError, ToolTimeoutError
from flakefix.models.result import ToolResult

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

# Exit status reported when a tool cannot be launched at all
NOT_FOUND_EXIT_CODE = 127


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphaned test processes when flakefix crashes.
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


class ToolRunner:
    """Runs one external tool invocation.

    Features:
    - Uses start_new_session=True so the whole process group can be killed
    - Sets PDEATHSIG on Linux to prevent orphans
    - Appends stdout/stderr to a stage log file
    - Enforces an optional wall-clock timeout
    """

    tool: str
    command_argv: list[str]
    workdir: Path
    log_path: Path
    env: dict[str, str]
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _log_file: IO[bytes] | None
    _offset: int

    def __init__(
        self,
        tool: str,
        command_argv: list[str],
        workdir: Path,
        log_path: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize a tool runner.

        Args:
            tool: Short tool name used in errors and logs (e.g. "git")
            command_argv: Command as list of argv tokens (no shell)
            workdir: Working directory to run the command in
            log_path: Log file the output is appended to
            env: Additional environment variables

        """
        self.tool = tool
        self.command_argv = command_argv
        self.workdir = workdir
        self.log_path = log_path

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._log_file = None
        self._offset = 0

    def start(self) -> None:
        """Start the tool process."""
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        self._log_file = self.log_path.open("ab")
        header = f"$ {shlex.join(self.command_argv)}\n"
        _ = self._log_file.write(header.encode())
        self._log_file.flush()
        self._offset = self._log_file.tell()

        logger.debug("Running %s: %s", self.tool, shlex.join(self.command_argv))
        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.command_argv,
                stdout=self._log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=self.env,
                cwd=str(self.workdir),
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
            )
        except OSError as e:
            self._cleanup()
            self._exit_code = NOT_FOUND_EXIT_CODE
            msg = f"{self.tool} could not be started: {e}"
            raise ExternalToolError(
                self.tool, self.command_argv, NOT_FOUND_EXIT_CODE, str(e), message=msg
            ) from e

    def poll(self) -> int | None:
        """Check if process has finished.

        Returns exit code if finished, None if still running.
        """
        if self._process is None:
            return self._exit_code

        code = self._process.poll()
        if code is not None:
            self._exit_code = code
            self._cleanup()

        return code

    def wait(self, timeout: float | None = None, grace_period: float = 10.0) -> int:
        """Wait for the process to finish and return exit code.

        When ``timeout`` elapses first, the process group is killed and
        ToolTimeoutError is raised. An interrupt also kills the process
        group before propagating.
        """
        if self._process is None:
            return self._exit_code or 0

        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while True:
                code = self.poll()
                if code is not None:
                    return code
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning("%s exceeded %.0fs, killing it", self.tool, timeout)
                    _ = self.kill(grace_period=grace_period)
                    raise ToolTimeoutError(
                        self.tool,
                        self.command_argv,
                        timeout or 0.0,
                        self.output(),
                    )
                time.sleep(0.05)
        except KeyboardInterrupt:
            _ = self.kill(grace_period=grace_period)
            raise

    def kill(self, grace_period: float = 10.0) -> int:
        """Kill the tool process.

        First sends SIGTERM to the process group, waits for grace_period,
        then sends SIGKILL if still alive.

        Args:
            grace_period: Seconds to wait after SIGTERM before SIGKILL

        Returns:
            Exit code (negative signal number if killed)

        """
        if self._process is None:
            return self._exit_code or 0

        # Already finished?
        if self._process.poll() is not None:
            exit_code = self._process.returncode or 0
            self._exit_code = exit_code
            self._cleanup()
            return exit_code

        # Get the process group ID (same as session ID with start_new_session)
        try:
            pgid = os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            # Process already gone
            self._cleanup()
            return self._exit_code or -signal.SIGKILL

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)

        deadline = time.monotonic() + grace_period
        while time.monotonic() < deadline:
            if self._process.poll() is not None:
                exit_code = self._process.returncode or 0
                self._exit_code = exit_code
                self._cleanup()
                return exit_code
            time.sleep(0.1)

        # Still alive - SIGKILL
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        exit_code = self._process.returncode or -signal.SIGKILL
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def output(self) -> str:
        """Return the output this invocation appended to the log."""
        if self._log_file is not None:
            self._log_file.flush()
        if not self.log_path.exists():
            return ""
        with self.log_path.open("rb") as f:
            _ = f.seek(self._offset)
            return f.read().decode(errors="replace")

    def _cleanup(self) -> None:
        """Cleanup resources."""
        if self._log_file:
            with contextlib.suppress(OSError):
                self._log_file.close()
            self._log_file = None


def run_tool(
    tool: str,
    argv: list[str],
    *,
    workdir: Path,
    log_path: Path,
    timeout: float | None = None,
    grace_period: float = 10.0,
    env: dict[str, str] | None = None,
    check: bool = True,
) -> ToolResult:
    """Run an external tool to completion and collect its result.

    Raises ExternalToolError on a non-zero exit when ``check`` is set,
    ToolTimeoutError when ``timeout`` elapses, and ExternalToolError when
    the executable cannot be launched.
    """
    runner = ToolRunner(tool, argv, workdir, log_path, env=env)
    started = time.monotonic()
    runner.start()
    exit_code = runner.wait(timeout=timeout, grace_period=grace_period)
    result = ToolResult(
        tool=tool,
        argv=argv,
        exit_code=exit_code,
        output=runner.output(),
        duration=time.monotonic() - started,
    )
    logger.debug("%s exited with %d after %.1fs", tool, exit_code, result.duration)
    if check and exit_code != 0:
        raise ExternalToolError(tool, argv, exit_code, result.output)
    return result

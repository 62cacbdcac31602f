# Copyright (c) Syntropy Systems
"""Reproducing flaky failures by running the test repeatedly."""
from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Callable

from flakefix.errors import ExternalToolError, ToolTimeoutError
from flakefix.models.result import ReproductionResult
from flakefix.runner import run_tool

if TYPE_CHECKING:
    from pathlib import Path

    from flakefix.config import FlakefixConfig

logger = logging.getLogger(__name__)

# Called after each attempt with (attempt, failures so far)
ProgressCallback = Callable[[int, int], None]


def render_command(template: list[str], **values: object) -> list[str]:
    """Substitute ``{name}`` placeholders in an argv template."""
    rendered: list[str] = []
    for arg in template:
        for name, value in values.items():
            arg = arg.replace(f"{{{name}}}", str(value))
        rendered.append(arg)
    return rendered


class Reproducer:
    """Runs the external test runner against one test and counts failures.

    In ``loop`` mode the runner is invoked once per attempt and every
    non-zero exit counts as a failure. In ``native`` mode the runner repeats
    the test itself and the failure count is read from its summary output.
    """

    def __init__(
        self,
        config: FlakefixConfig,
        workdir: Path,
        log_dir: Path,
    ) -> None:
        self.config = config
        self.workdir = workdir
        self.log_dir = log_dir
        self._failure_pattern = re.compile(config.failure_pattern)

    def _log_path(self, test_path: str, repeat: int) -> Path:
        slug = re.sub(r"[^A-Za-z0-9._-]+", "_", test_path).strip("_")
        return self.log_dir / f"reproduce-{slug}-x{repeat}.log"

    def reproduce(
        self,
        test_path: str,
        repeat: int | None = None,
        timeout: float | None = None,
        progress: ProgressCallback | None = None,
    ) -> ReproductionResult:
        """Run ``test_path`` ``repeat`` times within a ``timeout`` budget.

        Raises ToolTimeoutError when the budget runs out and
        ExternalToolError when the runner cannot be launched.
        """
        if repeat is None:
            repeat = self.config.repeat
        if timeout is None:
            timeout = self.config.reproduce_timeout
        if repeat < 1:
            msg = "repeat must be at least 1"
            raise ValueError(msg)

        logger.info("Reproducing %s x%d (budget %.0fs)", test_path, repeat, timeout)
        if self.config.repeat_mode == "native":
            result = self._reproduce_native(test_path, repeat, timeout)
        else:
            result = self._reproduce_loop(test_path, repeat, timeout, progress)
        logger.info("%s: %s", test_path, result.describe())
        return result

    def _reproduce_loop(
        self,
        test_path: str,
        repeat: int,
        timeout: float,
        progress: ProgressCallback | None,
    ) -> ReproductionResult:
        argv = render_command(self.config.test_command, test=test_path, repeat=1)
        log_path = self._log_path(test_path, repeat)
        started = time.monotonic()
        deadline = started + timeout
        failures = 0

        for attempt in range(1, repeat + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ToolTimeoutError("test runner", argv, timeout)
            try:
                result = run_tool(
                    "test runner",
                    argv,
                    workdir=self.workdir,
                    log_path=log_path,
                    timeout=remaining,
                    grace_period=self.config.kill_grace_period,
                    check=False,
                )
            except ToolTimeoutError as e:
                raise ToolTimeoutError("test runner", argv, timeout, e.output) from e
            if not result.ok:
                failures += 1
                logger.debug("Attempt %d failed with exit code %d", attempt, result.exit_code)
            if progress is not None:
                progress(attempt, failures)

        return ReproductionResult(
            test_path=test_path,
            attempts=repeat,
            failures=failures,
            duration=time.monotonic() - started,
        )

    def _reproduce_native(
        self,
        test_path: str,
        repeat: int,
        timeout: float,
    ) -> ReproductionResult:
        argv = render_command(self.config.test_command, test=test_path, repeat=repeat)
        result = run_tool(
            "test runner",
            argv,
            workdir=self.workdir,
            log_path=self._log_path(test_path, repeat),
            timeout=timeout,
            grace_period=self.config.kill_grace_period,
            check=False,
        )

        failures = self.parse_failures(result.output)
        if failures is None:
            if not result.ok:
                raise ExternalToolError(
                    "test runner",
                    argv,
                    result.exit_code,
                    result.output,
                    message=(
                        f"test runner exited with {result.exit_code} "
                        "without a recognizable summary"
                    ),
                )
            failures = 0

        return ReproductionResult(
            test_path=test_path,
            attempts=repeat,
            failures=min(failures, repeat),
            duration=result.duration,
        )

    def parse_failures(self, output: str) -> int | None:
        """Return the failure count from the last summary line, if any."""
        matches = self._failure_pattern.findall(output)
        if not matches:
            return None
        try:
            return int(matches[-1])
        except ValueError:
            return None

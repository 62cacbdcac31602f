# Copyright (c) Syntropy Systems
"""Error taxonomy for flakefix."""
from __future__ import annotations

import shlex
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flakefix.models.result import ReproductionResult

OUTPUT_TAIL_LINES = 20


def tail(output: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    """Return the last ``lines`` lines of captured output."""
    return "\n".join(output.rstrip().splitlines()[-lines:])


class FlakefixError(RuntimeError):
    """Base class for errors raised by flakefix."""


class ConfigError(FlakefixError):
    """Configuration is missing or invalid."""


class FetchError(FlakefixError):
    """The issue tracker was unreachable or returned a malformed response."""


class NoCandidateError(FlakefixError):
    """Every record was excluded or abandoned; there is nothing to do."""


class NonReproducibleError(FlakefixError):
    """A candidate did not fail locally and was abandoned."""

    def __init__(self, result: ReproductionResult) -> None:
        super().__init__(
            f"{result.test_path} did not reproduce ({result.describe()})"
        )
        self.result = result


class ExternalToolError(FlakefixError):
    """An external command exited with a non-zero status."""

    def __init__(
        self,
        tool: str,
        argv: list[str],
        exit_code: int | None,
        output: str = "",
        message: str | None = None,
    ) -> None:
        self.tool = tool
        self.argv = argv
        self.exit_code = exit_code
        self.output = output
        if message is None:
            message = f"{tool} failed with exit code {exit_code}"
        super().__init__(message)

    @property
    def command(self) -> str:
        """The failed command line, shell quoted."""
        return shlex.join(self.argv)

    def details(self) -> str:
        """Command, exit code and output tail for operator diagnostics."""
        lines = [
            f"command: {self.command}",
            f"exit code: {self.exit_code}",
        ]
        captured = tail(self.output)
        if captured:
            lines.append("output:")
            lines.append(captured)
        return "\n".join(lines)


class ToolTimeoutError(ExternalToolError):
    """An external command exceeded its wall-clock budget and was killed."""

    def __init__(
        self,
        tool: str,
        argv: list[str],
        timeout: float,
        output: str = "",
    ) -> None:
        super().__init__(
            tool,
            argv,
            None,
            output,
            message=f"{tool} timed out after {timeout:g}s",
        )
        self.timeout = timeout


class LintError(ExternalToolError):
    """The linter reported violations that need correcting."""


class VerificationError(FlakefixError):
    """A fix did not hold up under the escalated repeat count."""

    def __init__(self, result: ReproductionResult) -> None:
        super().__init__(
            f"{result.test_path} still fails after the fix ({result.describe()})"
        )
        self.result = result

# Copyright (c) Syntropy Systems
"""Pydantic models for stage outcomes."""

from __future__ import annotations

from pydantic import Field, computed_field

from .base import FlakefixBaseModel
from .report import FlakyTestRecord


class ToolResult(FlakefixBaseModel):
    """Outcome of one external tool invocation."""

    tool: str
    argv: list[str] = Field(default_factory=list)
    exit_code: int
    output: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        """Whether the tool exited with status zero."""
        return self.exit_code == 0


class ReproductionResult(FlakefixBaseModel):
    """Aggregated pass/fail counts from repeated test runs."""

    test_path: str
    attempts: int = Field(ge=0)
    failures: int = Field(ge=0)
    duration: float = 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def reproduced(self) -> bool:
        """Whether at least one run failed."""
        return self.failures > 0

    def describe(self) -> str:
        """Short human readable summary, e.g. ``3/100 runs failed``."""
        return f"{self.failures}/{self.attempts} runs failed"


class Exclusion(FlakefixBaseModel):
    """A record dropped by the candidate selector, with the reason."""

    record: FlakyTestRecord
    reason: str


class Selection(FlakefixBaseModel):
    """Result of ranking report records."""

    ranked: list[FlakyTestRecord] = Field(default_factory=list)
    excluded: list[Exclusion] = Field(default_factory=list)

    @property
    def candidate(self) -> FlakyTestRecord | None:
        """Highest ranked record, or None when everything was excluded."""
        return self.ranked[0] if self.ranked else None


class PullRequest(FlakefixBaseModel):
    """A change request opened through the hosting CLI."""

    url: str
    branch: str
    title: str

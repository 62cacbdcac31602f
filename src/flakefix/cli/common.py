# Copyright (c) Syntropy Systems
"""Helpers shared by flakefix commands."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import typer
from rich.console import Console

from flakefix.config import get_runs_dir, get_workspace, load_config, require_flakefix_dir
from flakefix.errors import ConfigError, ExternalToolError, tail
from flakefix.workflow import new_run_id

if TYPE_CHECKING:
    from pathlib import Path

    from flakefix.config import FlakefixConfig

console = Console()


@dataclass
class Project:
    """An initialized checkout and its configuration."""

    flakefix_dir: Path
    workspace: Path
    config: FlakefixConfig

    def new_run_dir(self) -> Path:
        """Create the log directory for a new run."""
        run_dir = get_runs_dir(self.flakefix_dir) / new_run_id()
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir


def load_project() -> Project:
    """Load the current project or exit with an error."""
    try:
        flakefix_dir = require_flakefix_dir()
        config = load_config(flakefix_dir)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    return Project(
        flakefix_dir=flakefix_dir,
        workspace=get_workspace(flakefix_dir),
        config=config,
    )


def print_tool_error(error: ExternalToolError) -> None:
    """Print a failed command with enough context to diagnose it."""
    console.print(f"[red]Error:[/red] {error}")
    console.print(f"  [dim]command:[/dim] {error.command}")
    console.print(f"  [dim]exit code:[/dim] {error.exit_code}")
    if error.output.strip():
        console.print("  [dim]output:[/dim]")
        console.print(tail(error.output), markup=False, highlight=False)

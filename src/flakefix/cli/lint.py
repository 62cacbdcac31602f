# Copyright (c) Syntropy Systems
"""flakefix lint command."""

import typer
from rich.console import Console

from flakefix.cli.common import load_project, print_tool_error
from flakefix.errors import ExternalToolError
from flakefix.orchestrator import ChangeOrchestrator

console = Console()


def lint() -> None:
    """Run the configured linter in fix mode."""
    project = load_project()
    orchestrator = ChangeOrchestrator(
        project.config, project.workspace, project.new_run_dir()
    )

    try:
        _ = orchestrator.lint()
    except ExternalToolError as e:
        print_tool_error(e)
        raise typer.Exit(1) from e

    console.print("[green]Lint passed[/green]")

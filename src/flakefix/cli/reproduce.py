# Copyright (c) Syntropy Systems
"""flakefix reproduce command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from flakefix.cli.common import load_project, print_tool_error
from flakefix.errors import ExternalToolError
from flakefix.reproduce import Reproducer

console = Console()


def reproduce(
    test: str = typer.Argument(
        ...,
        help="Test to run, e.g. parallel/test-fs-watch",
    ),
    repeat: Optional[int] = typer.Option(
        None,
        "--repeat", "-r",
        min=1,
        help="Number of runs (default: repeat from config)",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout", "-t",
        help="Wall-clock budget in seconds for all runs",
    ),
) -> None:
    """Run a test repeatedly and report how often it fails."""
    project = load_project()
    run_dir = project.new_run_dir()
    reproducer = Reproducer(project.config, project.workspace, run_dir)
    count = repeat or project.config.repeat

    try:
        with console.status(f"Running {test} x{count}...") as status:

            def progress(attempt: int, failures: int) -> None:
                status.update(f"Running {test}: {attempt}/{count}, {failures} failed")

            result = reproducer.reproduce(test, count, timeout, progress=progress)
    except ExternalToolError as e:
        print_tool_error(e)
        raise typer.Exit(1) from e

    if result.reproduced:
        console.print(f"[red]Reproduced:[/red] {test} ({result.describe()})")
    else:
        console.print(f"[green]Not reproduced:[/green] {test} ({result.describe()})")
    console.print(f"  [dim]duration:[/dim] {result.duration:.1f}s")
    console.print(f"  [dim]logs:[/dim] {run_dir}")

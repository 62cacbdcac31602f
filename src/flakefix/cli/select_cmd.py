# Copyright (c) Syntropy Systems
"""flakefix select command."""

import typer
from rich.console import Console

from flakefix.cli.common import load_project
from flakefix.cli.fetch import show_records
from flakefix.errors import ConfigError, FetchError
from flakefix.workflow import FlakeWorkflow

console = Console()


def select(
    show_excluded: bool = typer.Option(
        True,
        "--show-excluded/--hide-excluded",
        help="List the records dropped by the exclusion heuristics",
    ),
) -> None:
    """Pick the next flaky test to investigate.

    Drops deny-listed signatures, skipped platforms and tests modified after
    the report, then ranks the rest by failure count.
    """
    project = load_project()
    workflow = FlakeWorkflow(project.config, project.workspace, project.new_run_dir())

    try:
        selection = workflow.select(workflow.fetch())
    except (ConfigError, FetchError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        workflow.close()

    if show_excluded and selection.excluded:
        console.print(f"[yellow]Excluded {len(selection.excluded)} record(s)[/yellow]")
        for exclusion in selection.excluded:
            console.print(f"  - {exclusion.record.test_path}: {exclusion.reason}")

    candidate = selection.candidate
    if candidate is None:
        console.print("[dim]No candidate: every record was excluded[/dim]")
        return

    console.print(f"[green]Candidate:[/green] {candidate.test_path}")
    console.print(f"  [dim]failures:[/dim] {candidate.failure_count}")
    console.print(f"  [dim]platform:[/dim] {candidate.platform.value}")
    if len(selection.ranked) > 1:
        console.print("\n[bold]Ranked[/bold]")
        show_records(selection.ranked)

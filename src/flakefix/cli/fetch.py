# Copyright (c) Syntropy Systems
"""flakefix fetch command."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from flakefix.cli.common import load_project
from flakefix.errors import FetchError
from flakefix.workflow import FlakeWorkflow

if TYPE_CHECKING:
    from flakefix.models.report import FlakyTestRecord

console = Console()


def fetch(
    limit: Optional[int] = typer.Option(
        None,
        "--limit", "-n",
        help="Show at most this many records",
    ),
) -> None:
    """Fetch the newest reliability report and list its flaky tests.

    Records are ordered by failure count, highest first.
    """
    project = load_project()
    workflow = FlakeWorkflow(project.config, project.workspace, project.new_run_dir())

    try:
        report = workflow.fetch()
    except FetchError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        workflow.close()

    console.print(f"[bold]{report.issue.title or 'Reliability report'}[/bold]")
    console.print(f"  [dim]reference:[/dim] {report.reference}")
    console.print(f"  [dim]observed until:[/dim] {report.observed_until.isoformat()}")

    records = report.records if limit is None else report.records[:limit]
    show_records(records)


def show_records(records: list[FlakyTestRecord]) -> None:
    """Display records in a table."""
    if not records:
        console.print("[dim]No flaky tests found in the report[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim")
    table.add_column("Test")
    table.add_column("Failures", justify="right")
    table.add_column("Platform")
    table.add_column("References")

    for index, record in enumerate(records, start=1):
        table.add_row(
            str(index),
            record.test_path,
            str(record.failure_count),
            record.platform.value,
            ", ".join(record.triggering_references) or "-",
        )

    console.print(table)

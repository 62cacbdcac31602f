# Copyright (c) Syntropy Systems
"""flakefix run command."""
from __future__ import annotations

import dataclasses
import shlex
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console

from flakefix.cli.common import load_project, print_tool_error
from flakefix.errors import (
    ConfigError,
    ExternalToolError,
    FetchError,
    FlakefixError,
    NoCandidateError,
    VerificationError,
)
from flakefix.workflow import FlakeWorkflow

if TYPE_CHECKING:
    from flakefix.errors import LintError
    from flakefix.models.report import FlakyTestRecord
    from flakefix.workflow import WorkflowState

console = Console()


def _confirm_fix(record: FlakyTestRecord, lint_error: LintError | None) -> bool:
    """Pause for the operator to edit the test, then continue."""
    if lint_error is not None:
        console.print("[yellow]Lint failed, correct these issues:[/yellow]")
        print_tool_error(lint_error)
    else:
        console.print(f"\n[bold]Fix {record.test_path} now.[/bold]")
    return typer.confirm("Continue once the fix is in place?", default=True)


def run(
    triage_only: bool = typer.Option(
        False,
        "--triage-only",
        help="Stop after finding a reproducible candidate",
    ),
    repeat: Optional[int] = typer.Option(
        None,
        "--repeat", "-r",
        min=1,
        help="Runs per candidate when reproducing",
    ),
    verify_repeat: Optional[int] = typer.Option(
        None,
        "--verify-repeat",
        min=1,
        help="Runs after the fix to confirm it",
    ),
    fix_command: Optional[str] = typer.Option(
        None,
        "--fix-command",
        help="Command that edits the test; {test}, {file} and {report} are substituted",
    ),
    yes: bool = typer.Option(
        False,
        "--yes", "-y",
        help="Never prompt; without a fix command the candidate is abandoned",
    ),
) -> None:
    """Run the whole triage and fix workflow.

    Fetches the newest report, picks and reproduces a candidate, waits for
    the fix (or runs --fix-command), lints, verifies at the escalated repeat
    count, commits, pushes and opens a pull request.
    """
    project = load_project()
    config = project.config
    overrides: dict[str, object] = {}
    if repeat is not None:
        overrides["repeat"] = repeat
    if verify_repeat is not None:
        overrides["verify_repeat"] = verify_repeat
    if fix_command:
        overrides["fix_command"] = shlex.split(fix_command)
    config = dataclasses.replace(config, **overrides)  # type: ignore[arg-type]

    run_dir = project.new_run_dir()
    workflow = FlakeWorkflow(
        config,
        project.workspace,
        run_dir,
        fix_hook=None if yes else _confirm_fix,
    )
    console.print(f"[dim]run:[/dim] {run_dir.name}")
    try:
        _run_workflow(workflow, triage_only=triage_only)
    finally:
        workflow.close()


def _run_workflow(workflow: FlakeWorkflow, *, triage_only: bool) -> None:
    try:
        record, before = workflow.triage()
    except NoCandidateError as e:
        _print_skipped(workflow.state)
        console.print(f"[dim]{e}[/dim]")
        return
    except (ConfigError, FetchError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    _print_skipped(workflow.state)
    console.print(f"[green]Candidate:[/green] {record.test_path}")
    console.print(f"  [dim]reproduced:[/dim] {before.describe()}")
    if triage_only:
        return

    try:
        pull_request = workflow.fix(record, before)
    except ExternalToolError as e:
        console.print(f"[red]Stage {workflow.state.stage} failed[/red]")
        print_tool_error(e)
        raise typer.Exit(1) from e
    except VerificationError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print(f"  [dim]branch:[/dim] {workflow.state.branch}")
        raise typer.Exit(1) from e
    except FlakefixError as e:
        console.print(f"[red]Stage {workflow.state.stage} failed:[/red] {e}")
        raise typer.Exit(1) from e

    after = workflow.state.verification
    console.print(f"[green]Opened pull request:[/green] {pull_request.url}")
    console.print(f"  [dim]branch:[/dim] {pull_request.branch}")
    if after is not None:
        console.print(f"  [dim]verified:[/dim] {after.describe()}")


def _print_skipped(state: WorkflowState) -> None:
    for line in state.log:
        if line.startswith(("skip ", "abandon ")):
            console.print(f"[yellow]{line}[/yellow]")

# Copyright (c) Syntropy Systems
"""flakefix doctor command."""
from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from rich.console import Console

from flakefix.config import find_flakefix_dir, get_workspace, load_config
from flakefix.errors import ConfigError

console = Console()


def _resolve(executable: str, workspace: Path) -> str | None:
    """Find an executable on PATH or relative to the checkout."""
    found = shutil.which(executable)
    if found:
        return found
    local = workspace / executable
    if local.is_file():
        return str(local)
    return None


def doctor() -> None:
    """Check flakefix setup and diagnose issues.

    Verifies:
    - .flakefix directory exists and its config loads
    - the checkout is a git work tree
    - git, gh, the test runner, the linter and any fix command are installed
    """
    issues: list[str] = []
    warnings: list[str] = []

    flakefix_dir = find_flakefix_dir()
    if flakefix_dir is None:
        console.print("[red]✗[/red] No .flakefix directory found")
        console.print("  Run [bold]flakefix init[/bold] to initialize a checkout")
        return

    console.print(f"[green]✓[/green] flakefix directory: {flakefix_dir}")
    workspace = get_workspace(flakefix_dir)

    try:
        config = load_config(flakefix_dir)
    except ConfigError as e:
        console.print(f"[red]✗[/red] Config: {e}")
        issues.append(f"Invalid config: {e}")
        config = None
    else:
        console.print(
            f"[green]✓[/green] Config: reports from {config.report_repository}, "
            f"fixes for {config.repository}"
        )

    git = shutil.which("git")
    if git is None:
        console.print("[red]✗[/red] git not found")
        issues.append("git missing")
    else:
        try:
            result = subprocess.run(  # noqa: S603
                [git, "rev-parse", "--is-inside-work-tree"],
                capture_output=True,
                text=True,
                timeout=5,
                check=False,
                cwd=str(workspace),
            )
            if result.returncode == 0:
                console.print(f"[green]✓[/green] git work tree: {workspace}")
            else:
                console.print(f"[yellow]⚠[/yellow] {workspace} is not a git work tree")
                warnings.append("Not a git work tree")
        except (OSError, subprocess.TimeoutExpired) as e:
            console.print(f"[yellow]⚠[/yellow] git check failed: {e}")
            warnings.append(f"git check failed: {e}")

    tools = {"gh": "gh"}
    if config is not None:
        tools["test runner"] = config.test_command[0]
        if config.lint_command:
            tools["linter"] = config.lint_command[0]
        if config.fix_command:
            tools["fix command"] = config.fix_command[0]
    for label, executable in tools.items():
        path = _resolve(executable, workspace)
        if path is None:
            console.print(f"[yellow]⚠[/yellow] {label}: {executable} not found")
            warnings.append(f"{label} not found")
        else:
            console.print(f"[green]✓[/green] {label}: {path}")

    runs_dir = flakefix_dir / "runs"
    if runs_dir.exists():
        run_count = len(list(runs_dir.iterdir()))
        console.print(f"[dim]•[/dim] Runs directory: {run_count} runs")

    # Summary
    console.print()
    if issues:
        console.print(f"[red]Found {len(issues)} issue(s)[/red]")
        for issue in issues:
            console.print(f"  - {issue}")
    elif warnings:
        console.print(f"[yellow]Found {len(warnings)} warning(s)[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")
    else:
        console.print("[green]All checks passed[/green]")

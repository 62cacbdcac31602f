# Copyright (c) Syntropy Systems
"""flakefix init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from flakefix.config import CONFIG_FILE, DIR_NAME, FlakefixConfig

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Checkout to initialize (default: current directory)",
    ),
) -> None:
    """Initialize flakefix in a checkout.

    Creates a .flakefix directory with a default configuration.
    """
    target = path.resolve()
    flakefix_dir = target / DIR_NAME

    if flakefix_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {flakefix_dir}")
        return

    # Create directory structure
    flakefix_dir.mkdir(parents=True)
    runs_dir = flakefix_dir / "runs"
    runs_dir.mkdir()

    # Run logs and local config never belong in a commit
    _ = (flakefix_dir / ".gitignore").write_text("*\n")

    config_path = flakefix_dir / CONFIG_FILE
    with config_path.open("w") as f:
        yaml.dump(FlakefixConfig().to_dict(), f, default_flow_style=False)

    console.print(f"[green]Initialized flakefix:[/green] {flakefix_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]runs:[/dim] {runs_dir}")

# Copyright (c) Syntropy Systems
"""Main CLI entry point for flakefix."""

import logging

import typer

from flakefix.cli.doctor import doctor
from flakefix.cli.fetch import fetch
from flakefix.cli.init_cmd import init
from flakefix.cli.lint import lint
from flakefix.cli.reproduce import reproduce
from flakefix.cli.run import run
from flakefix.cli.select_cmd import select

app = typer.Typer(
    name="flakefix",
    help=(
        "Flaky test triage. Fetch the reliability report, pick a test, "
        "reproduce it, ship the fix."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Log every stage and external command",
    ),
) -> None:
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Register commands
_ = app.command()(init)
_ = app.command()(doctor)
_ = app.command()(fetch)
_ = app.command()(select)
_ = app.command()(reproduce)
_ = app.command()(lint)
_ = app.command()(run)


if __name__ == "__main__":
    app()

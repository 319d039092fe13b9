"""Main Typer application: entry point for the ``loadfleet`` CLI."""

from __future__ import annotations

import typer

from loadfleet import __version__
from loadfleet.cli.nodes import controller_cmd, hub_cmd, worker_cmd
from loadfleet.cli.run import run_cmd
from loadfleet.cli.status import cancel_cmd, status_cmd

app = typer.Typer(
    name="loadfleet",
    help="Orchestrate distributed load tests across a fleet of workers.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("run", help="Run a scenario on a local fleet.")(run_cmd)
app.command("controller", help="Coordinate a distributed run through a hub.")(controller_cmd)
app.command("worker", help="Run one worker of a distributed run.")(worker_cmd)
app.command("hub", help="Serve the control-plane pub/sub hub.")(hub_cmd)
app.command("status", help="Show stored run state.")(status_cmd)
app.command("cancel", help="Cancel a distributed run.")(cancel_cmd)


def _version_callback(value: bool) -> None:
    """Print version and exit.

    Args:
        value: True if --version was passed.
    """
    if value:
        typer.echo(f"loadfleet {__version__}")
        raise typer.Exit


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """LoadFleet: orchestrate distributed load tests."""

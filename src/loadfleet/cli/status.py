"""``loadfleet status`` and ``loadfleet cancel``: observe and stop runs."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.table import Table

from loadfleet._internal.config import load_config
from loadfleet._internal.errors import LoadFleetError, TransportError
from loadfleet._internal.retry import retry_async
from loadfleet.cli.nodes import resolve_hub_url
from loadfleet.cli.run import print_summary
from loadfleet.store.json_file import JsonFileRunStore
from loadfleet.transport.protocol import Cancel, control_topic
from loadfleet.transport.websocket import WebSocketTransport

if TYPE_CHECKING:
    from loadfleet._internal.config import LoadFleetConfig

console = Console()
err_console = Console(stderr=True)

CLI_SENDER_ID = "cli"


def _store(store_dir: Path | None) -> JsonFileRunStore:
    directory = store_dir
    if directory is None:
        configured = load_config().store_dir
        if not configured:
            msg = "--store-dir is required (or set LOADFLEET_STORE_DIR)"
            raise typer.BadParameter(msg)
        directory = Path(configured)
    return JsonFileRunStore(directory)


def status_cmd(
    run_id: str | None = typer.Argument(
        None, help="Run to show; all runs are listed if omitted."
    ),
    store_dir: Path | None = typer.Option(
        None,
        "--store-dir",
        help="JSON run store directory (default: LOADFLEET_STORE_DIR).",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the raw run record."),
) -> None:
    """Show the stored state of one run, or list all runs."""
    try:
        store = _store(store_dir)
        if run_id is None:
            runs = [store.get_run(r) for r in store.list_runs()]
        else:
            run = store.get_run(run_id)
    except LoadFleetError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    if run_id is not None:
        if as_json:
            typer.echo(json.dumps(run.to_dict(), indent=2))
        else:
            print_summary(run, out=console)
        return

    if as_json:
        typer.echo(json.dumps([r.to_dict() for r in runs], indent=2))
        return
    table = Table(title="Runs", show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Run", style="bold")
    table.add_column("Scenario")
    table.add_column("Status")
    table.add_column("Workers", justify="right")
    table.add_column("Reason")
    for run in runs:
        table.add_row(
            run.run_id,
            run.scenario or "-",
            run.status.name,
            str(run.expected_workers),
            run.failure_reason or "",
        )
    console.print(table)


async def _send_cancel(
    hub_url: str, run_id: str, reason: str, config: LoadFleetConfig
) -> None:
    transport = WebSocketTransport(hub_url)
    try:
        await retry_async(
            transport.publish,
            control_topic(run_id),
            Cancel(run_id, CLI_SENDER_ID, reason=reason),
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay,
            retry_on=(TransportError,),
            description="publish Cancel",
        )
    finally:
        await transport.close()


def cancel_cmd(
    run_id: str = typer.Argument(..., help="Run to cancel."),
    hub_url: str | None = typer.Option(
        None, "--hub", help="Hub base URL (default: LOADFLEET_HUB_URL)."
    ),
    reason: str = typer.Option(
        "cancelled by operator", "--reason", "-r", help="Reason recorded on the run."
    ),
) -> None:
    """Ask a run's controller to cancel it."""
    try:
        config = load_config()
        url = resolve_hub_url(hub_url, config)
        asyncio.run(_send_cancel(url, run_id, reason, config))
    except LoadFleetError as exc:
        err_console.print(f"[red]Cancel failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    err_console.print(f"Cancel sent to run {run_id}")

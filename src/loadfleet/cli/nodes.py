"""Commands that run one participant of a distributed run each.

Start order for a distributed run: ``hub``, then ``controller`` (it must be
subscribed before workers announce themselves), then one ``worker`` per
task id (``worker-0`` .. ``worker-{N-1}``).
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from aiohttp import web
from rich.console import Console

from loadfleet._internal.config import load_config
from loadfleet._internal.errors import LoadFleetError
from loadfleet._internal.logging import setup_logging
from loadfleet.cli.run import exit_code_for, print_summary
from loadfleet.orchestration.controller import RunController
from loadfleet.orchestration.fleet import (
    install_cancel_handlers,
    install_uvloop,
    remove_cancel_handlers,
)
from loadfleet.orchestration.scenario import load_scenario
from loadfleet.orchestration.worker import WorkerAgent
from loadfleet.store.json_file import JsonFileRunStore
from loadfleet.store.memory import InMemoryRunStore
from loadfleet.transport.hub import create_hub_app
from loadfleet.transport.protocol import Finished
from loadfleet.transport.websocket import WebSocketTransport

if TYPE_CHECKING:
    from loadfleet._internal.config import LoadFleetConfig
    from loadfleet.orchestration.models import Run
    from loadfleet.orchestration.scenario import ScenarioDescriptor
    from loadfleet.store.base import RunStateStore

console = Console(stderr=True)


def resolve_hub_url(hub_url: str | None, config: LoadFleetConfig) -> str:
    """Return the hub URL from the flag or ``LOADFLEET_HUB_URL``.

    Raises:
        typer.BadParameter: If neither is set.
    """
    url = hub_url or config.hub_url
    if not url:
        msg = "--hub is required (or set LOADFLEET_HUB_URL)"
        raise typer.BadParameter(msg)
    return url


def _open_store(store_dir: Path | None, config: LoadFleetConfig) -> RunStateStore:
    directory = store_dir or (Path(config.store_dir) if config.store_dir else None)
    return JsonFileRunStore(directory) if directory else InMemoryRunStore()


# ---------------------------------------------------------------------------
# controller
# ---------------------------------------------------------------------------


async def _run_controller(
    run_id: str,
    scenario: ScenarioDescriptor,
    hub_url: str,
    store: RunStateStore,
    config: LoadFleetConfig,
) -> Run:
    transport = WebSocketTransport(hub_url)
    controller = RunController(
        run_id,
        scenario.task_ids,
        transport,
        store,
        scenario=scenario.name,
        scenario_duration=scenario.duration_seconds,
        config=config,
    )
    install_cancel_handlers(lambda: controller.request_cancel("interrupted"))
    try:
        return await controller.run_until_complete()
    finally:
        remove_cancel_handlers()
        await transport.close()


def controller_cmd(
    run_id: str = typer.Argument(..., help="Run identifier."),
    scenario_file: Path = typer.Option(
        ...,
        "--scenario",
        "-s",
        help="Path to the scenario .json file.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    hub_url: str | None = typer.Option(
        None, "--hub", help="Hub base URL (default: LOADFLEET_HUB_URL)."
    ),
    store_dir: Path | None = typer.Option(
        None,
        "--store-dir",
        help="JSON run store directory (default: LOADFLEET_STORE_DIR).",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose (DEBUG) logging."
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines."),
) -> None:
    """Coordinate one run whose workers connect through a hub."""
    setup_logging(level=logging.DEBUG if verbose else logging.INFO, json_format=json_logs)
    try:
        config = load_config()
        url = resolve_hub_url(hub_url, config)
        scenario = load_scenario(scenario_file)
        store = _open_store(store_dir, config)
    except LoadFleetError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    install_uvloop()
    run = asyncio.run(_run_controller(run_id, scenario, url, store, config))
    print_summary(run)
    raise typer.Exit(code=exit_code_for(run))


# ---------------------------------------------------------------------------
# worker
# ---------------------------------------------------------------------------


async def _run_worker(
    run_id: str,
    task_id: str,
    scenario: ScenarioDescriptor,
    hub_url: str,
    config: LoadFleetConfig,
) -> bool:
    transport = WebSocketTransport(hub_url)
    try:
        agent = WorkerAgent(run_id, task_id, scenario, transport, config=config)
        outcome = await agent.run()
    finally:
        await transport.close()
    return isinstance(outcome, Finished)


def worker_cmd(
    run_id: str = typer.Argument(..., help="Run identifier."),
    task_id: str = typer.Argument(..., help="Task identifier, e.g. worker-0."),
    scenario_file: Path = typer.Option(
        ...,
        "--scenario",
        "-s",
        help="Path to the scenario .json file.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    hub_url: str | None = typer.Option(
        None, "--hub", help="Hub base URL (default: LOADFLEET_HUB_URL)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose (DEBUG) logging."
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines."),
) -> None:
    """Run one worker agent of a distributed run."""
    setup_logging(level=logging.DEBUG if verbose else logging.INFO, json_format=json_logs)
    try:
        config = load_config()
        url = resolve_hub_url(hub_url, config)
        scenario = load_scenario(scenario_file)
        if task_id not in scenario.task_ids:
            msg = f"{task_id} is not one of {scenario.task_ids}"
            raise typer.BadParameter(msg)
        install_uvloop()
        finished = asyncio.run(_run_worker(run_id, task_id, scenario, url, config))
    except LoadFleetError as exc:
        console.print(f"[red]Worker failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    raise typer.Exit(code=0 if finished else 1)


# ---------------------------------------------------------------------------
# hub
# ---------------------------------------------------------------------------


def hub_cmd(
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind."),
    port: int = typer.Option(8089, "--port", "-p", help="Port to listen on."),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose (DEBUG) logging."
    ),
) -> None:
    """Serve the pub/sub hub that carries control messages between nodes."""
    setup_logging(level=logging.DEBUG if verbose else logging.INFO)
    console.print(f"[bold]LoadFleet hub[/bold] listening on http://{host}:{port}")
    web.run_app(create_hub_app(), host=host, port=port, print=None)

"""``loadfleet run``: launch a local fleet with live terminal output."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from loadfleet._internal.config import load_config
from loadfleet._internal.errors import LoadFleetError
from loadfleet._internal.logging import setup_logging
from loadfleet.orchestration.fleet import LocalFleet, install_uvloop
from loadfleet.orchestration.models import RunState
from loadfleet.orchestration.scenario import load_scenario
from loadfleet.store.json_file import JsonFileRunStore
from loadfleet.store.memory import InMemoryRunStore

if TYPE_CHECKING:
    from loadfleet.orchestration.models import Run

console = Console(stderr=True)

_STATE_STYLES = {
    RunState.COMPLETE: "green",
    RunState.FAILED: "red",
    RunState.CANCELLED: "yellow",
}


# ---------------------------------------------------------------------------
# Rich display
# ---------------------------------------------------------------------------


def make_workers_table(run: Run) -> Table:
    """Build a Rich table with one row per worker of *run*.

    Args:
        run: Run snapshot.

    Returns:
        Formatted Rich Table.
    """
    style = _STATE_STYLES.get(run.status, "cyan")
    table = Table(
        title=f"Run {run.run_id} [{style}]{run.status.name}[/{style}]",
        show_header=True,
        header_style="bold cyan",
        expand=True,
    )
    table.add_column("Task", style="bold")
    table.add_column("State")
    table.add_column("Requests", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("p95", justify="right")
    table.add_column("Last seen", justify="right")

    now = time.time()
    for status in run.workers.values():
        metrics = status.final_metrics or status.partial_metrics
        state = status.state.name + (" (partial)" if status.partial else "")
        if status.failure_reason:
            state = f"{state}: {status.failure_reason}"
        table.add_row(
            status.task_id,
            state,
            str(metrics.requests) if metrics else "-",
            str(metrics.errors) if metrics else "-",
            f"{metrics.latency_p95:.1f}ms" if metrics else "-",
            f"{now - status.last_heartbeat:.0f}s ago" if status.last_heartbeat else "-",
        )
    return table


def print_summary(run: Run, out: Console | None = None) -> None:
    """Print the outcome of a terminal run.

    Args:
        run: Terminal run record.
        out: Console to print to; the stderr console by default.
    """
    out = out or console
    out.print(make_workers_table(run))

    result = run.aggregate
    if result is None:
        reason = run.failure_reason or "-"
        style = _STATE_STYLES.get(run.status, "cyan")
        out.print(f"[{style}]{run.status.name}[/{style}]: {reason}")
        return

    table = Table(
        title="Aggregate",
        show_header=True,
        header_style="bold green",
        expand=True,
    )
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Workers", str(result.worker_count))
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")
    table.add_row("Total Requests", str(result.total_requests))
    table.add_row("Requests/sec", f"{result.requests_per_second:.1f}")
    table.add_row("Min Latency", f"{result.latency_min:.1f}ms")
    table.add_row("Avg Latency", f"{result.latency_avg:.1f}ms")
    table.add_row("Max Latency", f"{result.latency_max:.1f}ms")
    table.add_row("p50 Latency", f"{result.latency_p50:.1f}ms")
    table.add_row("p90 Latency", f"{result.latency_p90:.1f}ms")
    table.add_row("p95 Latency", f"{result.latency_p95:.1f}ms")
    table.add_row("p99 Latency", f"{result.latency_p99:.1f}ms")
    table.add_row("p99.9 Latency", f"{result.latency_p999:.1f}ms")
    table.add_row("Total Errors", str(result.total_errors))
    table.add_row("Error Rate", f"{result.error_rate * 100:.2f}%")
    out.print(table)


def exit_code_for(run: Run) -> int:
    """Return the process exit code for a terminal run."""
    return 0 if run.status is RunState.COMPLETE else 1


async def _run_live(fleet: LocalFleet, live: Live) -> Run:
    async def _refresh() -> None:
        while True:
            live.update(make_workers_table(fleet.controller.run))
            await asyncio.sleep(0.5)

    refresher = asyncio.create_task(_refresh())
    try:
        return await fleet.run()
    finally:
        refresher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await refresher


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------


def run_cmd(
    scenario_file: Path = typer.Argument(
        ...,
        help="Path to the scenario .json file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
    workers: int | None = typer.Option(
        None,
        "--workers",
        "-w",
        help="Override the scenario's worker count.",
        min=1,
    ),
    run_id: str | None = typer.Option(
        None,
        "--run-id",
        help="Run identifier (default: generated).",
    ),
    store_dir: Path | None = typer.Option(
        None,
        "--store-dir",
        help="Persist run state as JSON in this directory (default: LOADFLEET_STORE_DIR).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose (DEBUG) logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit logs as JSON lines.",
    ),
) -> None:
    """Launch N workers and a controller in this process and wait for the run."""
    setup_logging(level=logging.DEBUG if verbose else logging.INFO, json_format=json_logs)

    try:
        config = load_config()
        scenario = load_scenario(scenario_file)
        if workers is not None:
            scenario = dataclasses.replace(scenario, workers=workers)
        directory = store_dir or (Path(config.store_dir) if config.store_dir else None)
        store = JsonFileRunStore(directory) if directory else InMemoryRunStore()
        fleet = LocalFleet(scenario, run_id=run_id, store=store, config=config)
    except LoadFleetError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    console.print(
        Panel(
            f"[bold]Scenario:[/bold] {scenario.name}\n"
            f"[bold]Run:[/bold]      {fleet.run_id}\n"
            f"[bold]Target:[/bold]   {scenario.target}\n"
            f"[bold]Workers:[/bold]  {scenario.workers}\n"
            f"[bold]Duration:[/bold] {scenario.duration_seconds}s",
            title="LoadFleet",
            border_style="cyan",
        )
    )

    install_uvloop()
    try:
        with Live(
            make_workers_table(fleet.controller.run),
            console=console,
            refresh_per_second=2,
            transient=True,
        ) as live:
            run = asyncio.run(_run_live(fleet, live))
    except LoadFleetError as exc:
        console.print(f"[red]Run failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    print_summary(run)
    if run.status is RunState.COMPLETE:
        console.print("[green]Load test completed successfully.[/green]")
    raise typer.Exit(code=exit_code_for(run))

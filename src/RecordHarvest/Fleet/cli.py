# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.cli",
#   "purpose": "Typer CLI for running, stopping, and inspecting a harvest fleet",
#   "sections": [
#     {"id": "run", "name": "run", "anchor": "function-run", "kind": "function"},
#     {"id": "stop", "name": "stop", "anchor": "function-stop", "kind": "function"},
#     {"id": "clear-stop", "name": "clear_stop", "anchor": "function-clear-stop", "kind": "function"},
#     {"id": "status", "name": "status", "anchor": "function-status", "kind": "function"},
#     {"id": "validate-config", "name": "validate_config", "anchor": "function-validate-config", "kind": "function"},
#     {"id": "print-config", "name": "print_config", "anchor": "function-print-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""CLI for the harvest fleet.

**Usage:**

    # Run three workers over ids 1..500 with a custom inspector
    recordharvest run -c harvest.yaml --workers 3 --max-id 500 \\
        --inspector mysite.harvest:build_inspector

    # From another shell: stop the fleet (workers clear their checkpoints)
    recordharvest stop -c harvest.yaml

    # Allow assignment again after a stop
    recordharvest clear-stop -c harvest.yaml

    # Registry and worker status
    recordharvest status -c harvest.yaml --format json

``stop``, ``clear-stop`` and ``status`` only touch the shared store, so they
work against a fleet running in another process as long as the store backend
is ``sqlite``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import HarvestConfig, export_config_schema, load_config, validate_config_file
from .coordinator import Coordinator
from .fleet import Fleet, load_factory, open_store
from .locks import lock_metrics_snapshot
from .models import RegistrySnapshot

__all__ = ["app"]

logger = logging.getLogger(__name__)

console = Console()
app = typer.Typer(help="Resumable record harvesting with a coordinated worker fleet")

_CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Path to config file", envvar="RHV_CONFIG"
)

# ============================================================================
# Setup
# ============================================================================


def _setup_logging(verbose: bool, level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Setup logging based on verbosity and the logging config section."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def _open_coordinator(cfg: HarvestConfig) -> Coordinator:
    if cfg.store.backend == "memory":
        console.print("[yellow]⚠ Memory store is process-local; nothing to inspect[/yellow]")
    return Coordinator(open_store(cfg.store), policy=cfg.fleet)


def _snapshot_dict(snapshot: RegistrySnapshot) -> Dict[str, Any]:
    return {
        "start_id": snapshot.start_id,
        "max_id": snapshot.max_id,
        "next_id": snapshot.next_id,
        "completed": sorted(snapshot.completed),
        "locks": {str(k): v.holder for k, v in sorted(snapshot.locks.items())},
        "resolved": {str(k): v.value for k, v in sorted(snapshot.resolved.items())},
        "fleet": {wid: record.to_dict() for wid, record in sorted(snapshot.fleet.items())},
        "flags": snapshot.flags.to_dict(),
    }


# ============================================================================
# Commands
# ============================================================================


@app.command()
def run(
    config: Optional[str] = _CONFIG_OPTION,
    workers: Optional[int] = typer.Option(None, "--workers", "-n", help="Number of workers"),
    start_id: Optional[int] = typer.Option(None, "--start-id", help="First record id"),
    max_id: Optional[int] = typer.Option(None, "--max-id", help="Last record id (inclusive)"),
    inspector: Optional[str] = typer.Option(
        None, "--inspector", help="Inspector factory as 'module:callable'"
    ),
    authenticator: Optional[str] = typer.Option(
        None, "--authenticator", help="Authenticator factory as 'module:callable'"
    ),
    no_resume: bool = typer.Option(
        False, "--no-resume", help="Ignore existing output when seeding the completed set"
    ),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose"),
) -> None:
    """Start a fleet and block until every worker has finished."""
    try:
        fleet_overrides: Dict[str, Any] = {}
        if workers is not None:
            fleet_overrides["worker_count"] = workers
        if start_id is not None:
            fleet_overrides["start_id"] = start_id
        if max_id is not None:
            fleet_overrides["max_id"] = max_id
        if no_resume:
            fleet_overrides["resume"] = False
        cli_overrides: Dict[str, Any] = {"fleet": fleet_overrides}
        if inspector:
            cli_overrides["inspector"] = inspector
        if authenticator:
            cli_overrides["authenticator"] = authenticator

        cfg = load_config(path=config, cli_overrides=cli_overrides)
        _setup_logging(verbose, cfg.logging.level, cfg.logging.file)

        if not cfg.inspector:
            console.print("[red]✗ No inspector configured (use --inspector module:callable)[/red]")
            raise typer.Exit(code=1)
        inspector_factory = load_factory(cfg.inspector)
        authenticator_factory = load_factory(cfg.authenticator) if cfg.authenticator else None

        console.print(
            Panel(
                f"[bold green]✓ Config loaded[/bold green]\n"
                f"Hash: {cfg.config_hash()[:8]}...\n"
                f"Workers: {cfg.fleet.worker_count}\n"
                f"Range: {cfg.fleet.start_id}..{cfg.fleet.max_id or '∞'}",
                title="RecordHarvest",
            )
        )
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        if verbose:
            raise
        raise typer.Exit(code=1)

    fleet = Fleet.from_config(
        cfg, inspector_factory=inspector_factory, authenticator_factory=authenticator_factory
    )
    try:
        fleet.start()
        while not fleet.join(timeout=1.0):
            pass
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; stopping fleet...[/yellow]")
        fleet.stop()
    finally:
        summary = fleet.status()
        fleet.shutdown()

    snapshot: RegistrySnapshot = summary["snapshot"]
    failures = summary["failures"]
    console.print(
        Panel(
            f"Completed: {len(snapshot.completed)}\n"
            f"Not found / empty: {len(snapshot.resolved)}\n"
            f"Failed workers: {len(failures)}",
            title="Run Summary",
        )
    )
    for failure in failures:
        console.print(
            f"[red]✗ {failure.worker_id}: {failure.error_type} on {failure.item_id}: {failure.message}[/red]"
        )
    if failures:
        raise typer.Exit(code=1)


@app.command()
def stop(config: Optional[str] = _CONFIG_OPTION) -> None:
    """Request a user stop; workers exit and clear their checkpoints."""
    try:
        cfg = load_config(path=config)
        flags = _open_coordinator(cfg).broadcast_stop(user_requested=True)
        console.print(f"[green]✓ Stop requested (flags v{flags.version})[/green]")
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def clear_stop(config: Optional[str] = _CONFIG_OPTION) -> None:
    """Clear the stop flag so work can be assigned again."""
    try:
        cfg = load_config(path=config)
        flags = _open_coordinator(cfg).clear_stop()
        console.print(f"[green]✓ Stop flag cleared (flags v{flags.version})[/green]")
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def status(
    config: Optional[str] = _CONFIG_OPTION,
    format: str = typer.Option("table", "--format", help="Output format: table|json"),
) -> None:
    """Display registry progress and worker states."""
    try:
        cfg = load_config(path=config)
        snapshot = _open_coordinator(cfg).snapshot()

        if format == "json":
            payload = _snapshot_dict(snapshot)
            payload["lock_metrics"] = lock_metrics_snapshot()
            typer.echo(json.dumps(payload, indent=2, sort_keys=True))
            return

        flags = snapshot.flags
        state = "stopped" if flags.stop_requested else "cooling down" if flags.frozen else "running"
        console.print(
            f"[cyan]Next id: {snapshot.next_id}  "
            f"Completed: {len(snapshot.completed)}  "
            f"Locked: {len(snapshot.locks)}  "
            f"Fleet: {state}[/cyan]"
        )

        table = Table(title="Workers")
        table.add_column("Worker", style="cyan")
        table.add_column("Status", style="green")
        table.add_column("Record", style="yellow")
        table.add_column("Context", style="magenta")
        for worker_id, record in sorted(snapshot.fleet.items()):
            table.add_row(
                worker_id,
                record.status.value,
                str(record.current_item) if record.current_item is not None else "-",
                record.context_id,
            )
        console.print(table)
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def validate_config(
    config: str = typer.Argument(..., help="Path to config file"),
) -> None:
    """Validate a config file."""
    try:
        validate_config_file(config)
        console.print("[green]✓ Config valid[/green]")
    except Exception as e:
        console.print(f"[red]✗ Invalid: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def print_config(
    config: Optional[str] = _CONFIG_OPTION,
    raw: bool = typer.Option(False, "--raw", help="Raw JSON"),
) -> None:
    """Print merged effective config."""
    try:
        cfg = load_config(path=config)
        data = cfg.model_dump(mode="json")
        if raw:
            typer.echo(json.dumps(data, indent=2))
        else:
            console.print(Panel(json.dumps(data, indent=2), title="RecordHarvest Config", expand=False))
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def schema() -> None:
    """Print the JSON Schema of the configuration."""
    typer.echo(json.dumps(export_config_schema(), indent=2))


if __name__ == "__main__":
    app()

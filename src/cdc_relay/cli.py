"""Typer CLI for the change relay."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import structlog
import typer
from rich.console import Console
from rich.table import Table

from cdc_relay.config.loader import load_relay_config
from cdc_relay.config.models import RelayConfig
from cdc_relay.observability.health import Status, check_relay_health
from cdc_relay.observability.logging import configure_logging
from cdc_relay.sources.wal.models import AdminResult
from cdc_relay.sources.wal.slot_manager import SlotManager
from cdc_relay.store.postgres import PostgresStore

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="cdc-relay", help="PostgreSQL change capture relay")
slot_app = typer.Typer(name="slot", help="Replication slot administration")
publication_app = typer.Typer(name="publication", help="Publication administration")
outbox_app = typer.Typer(name="outbox", help="Outbox table operations")
app.add_typer(slot_app)
app.add_typer(publication_app)
app.add_typer(outbox_app)

T = TypeVar("T")


def _load(config_path: str | None) -> RelayConfig:
    if config_path is not None and not Path(config_path).exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(1)
    try:
        config = load_relay_config(Path(config_path) if config_path else None)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid config:[/red] {exc}")
        raise typer.Exit(1) from exc
    if config.source is None:
        console.print("[red]No source database configured[/red]")
        raise typer.Exit(1)
    configure_logging(config.log_level, json_output=config.log_json)
    return config


def _with_source(
    config: RelayConfig, action: Callable[[PostgresStore], Awaitable[T]]
) -> T:
    assert config.source is not None

    async def _run() -> T:
        store = PostgresStore(config.source.conninfo(), name="cli")
        try:
            return await action(store)
        finally:
            await store.close()

    return asyncio.run(_run())


def _slot_manager(config: RelayConfig, store: PostgresStore) -> SlotManager:
    rep = config.replication
    return SlotManager(
        store,
        rep.slot_name,
        rep.publication_name,
        output_plugin=rep.output_plugin,
        cleanup_wait_seconds=rep.force_cleanup_wait_seconds,
    )


def _print_result(result: AdminResult) -> None:
    style = "green" if result.success else "red"
    console.print(f"[{style}]{result.message}[/{style}]")
    if result.details:
        table = Table(show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for key, value in result.details.items():
            table.add_row(key, str(value))
        console.print(table)
    if not result.success:
        raise typer.Exit(1)


@app.command()
def validate(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Validate a relay configuration file."""
    config = _load(config_path)
    assert config.source is not None
    console.print(f"[green]Valid[/green] relay_id={config.relay_id}")
    console.print(f"  source: {config.source.describe()}")
    target = config.target.describe() if config.target else "(none)"
    console.print(f"  target: {target}")
    for t in config.tables:
        shape = "tracked" if t.updated_column else "insert-only"
        console.print(f"  table:  {t.qualified_name} ({t.kind}, {shape})")
    console.print(f"  poller: {'enabled' if config.poller.enabled else 'disabled'}")
    console.print(f"  outbox: {'enabled' if config.outbox.enabled else 'disabled'}")
    rep = config.replication
    if rep.enabled:
        console.print(
            f"  replication: slot={rep.slot_name} publication={rep.publication_name}"
        )
    else:
        console.print("  replication: disabled")


@app.command()
def health(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Check health of the source database and replication objects."""
    config = _load(config_path)

    async def _check(store: PostgresStore) -> Any:
        return await check_relay_health(config, store)

    result = _with_source(config, _check)

    table = Table(title="Relay Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for c in result.components:
        style = "green" if c.status == Status.HEALTHY else "red"
        table.add_row(c.name, f"[{style}]{c.status}[/{style}]", c.detail)

    console.print(table)
    if not result.healthy:
        raise typer.Exit(1)


@app.command()
def run(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Run the relay (poller, outbox drain, replication supervision)."""
    config = _load(config_path)

    from cdc_relay.pipeline.runner import Relay

    console.print(f"[yellow]Starting relay:[/yellow] {config.relay_id}")
    for t in config.tables:
        console.print(f"  table: {t.qualified_name}")

    relay = Relay(config)
    try:
        relay.start()
    except KeyboardInterrupt:
        relay.stop()


@slot_app.command("status")
def slot_status(
    slot_name: str | None = typer.Option(None, "--slot", help="Slot name"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Show replication slot details."""
    config = _load(config_path)
    _print_result(
        _with_source(
            config, lambda s: _slot_manager(config, s).get_slot_status(slot_name)
        )
    )


@slot_app.command("reset")
def slot_reset(
    slot_name: str | None = typer.Option(None, "--slot", help="Slot name"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Drop and recreate an inactive replication slot."""
    config = _load(config_path)
    _print_result(
        _with_source(config, lambda s: _slot_manager(config, s).reset_slot(slot_name))
    )


@slot_app.command("force-cleanup")
def slot_force_cleanup(
    slot_name: str | None = typer.Option(None, "--slot", help="Slot name"),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Terminate the slot's holder backend, then drop and recreate it."""
    config = _load(config_path)
    name = slot_name or config.replication.slot_name
    if not yes:
        typer.confirm(f"Terminate backends holding slot {name}?", abort=True)
    _print_result(
        _with_source(
            config, lambda s: _slot_manager(config, s).force_cleanup_slot(name)
        )
    )


@publication_app.command("ensure")
def publication_ensure(
    name: str | None = typer.Option(None, "--name", help="Publication name"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Create the publication for the configured tables if missing."""
    config = _load(config_path)
    tables = [t.qualified_name for t in config.tables]
    _print_result(
        _with_source(
            config,
            lambda s: _slot_manager(config, s).create_publication_if_absent(
                name, tables
            ),
        )
    )


@outbox_app.command("drain")
def outbox_drain(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Relay YAML"),
) -> None:
    """Run a single outbox drain pass and report what was marked processed."""
    config = _load(config_path)

    from cdc_relay.outbox.store import OutboxStore
    from cdc_relay.outbox.worker import OutboxDrainWorker

    async def _drain(store: PostgresStore) -> tuple[int, int]:
        outbox = OutboxStore(store, config.outbox)
        marked = await OutboxDrainWorker(outbox, config.outbox).drain_once()
        return marked, await outbox.pending_count()

    marked, pending = _with_source(config, _drain)
    console.print(f"[green]Marked processed:[/green] {marked}")
    console.print(f"  pending: {pending}")

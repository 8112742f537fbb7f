#!/usr/bin/env python3
"""Runnable demo: write an order with its outbox entry, then relay both.

Prerequisites:
    a PostgreSQL database reachable through the SHOP_DB_* variables
    python examples/outbox_relay_demo.py
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from rich.console import Console

from cdc_relay.config.loader import load_relay_config
from cdc_relay.events.model import ChangeEvent
from cdc_relay.events.registry import EventDispatchRegistry
from cdc_relay.observability.health import Status, check_database
from cdc_relay.outbox.models import OutboxEntry
from cdc_relay.outbox.store import OutboxStore
from cdc_relay.outbox.worker import OutboxDrainWorker
from cdc_relay.sources.poller.poller import ChangePoller
from cdc_relay.store.postgres import PostgresStore

console = Console()
CONFIG = Path(__file__).parent / "relay-config.yaml"


async def demo() -> None:
    # 1. Config from the example file merged over built-in defaults
    config = load_relay_config(CONFIG)
    assert config.source is not None
    store = PostgresStore(config.source.conninfo(), name="demo")

    try:
        # 2. Source connectivity
        health = await check_database(store)
        if health.status != Status.HEALTHY:
            console.print("[red]Source not reachable:[/red]", health.detail)
            sys.exit(1)

        # 3. Business write and outbox entry in one transaction
        outbox = OutboxStore(store, config.outbox)
        await outbox.ensure_table()
        await store.execute(
            "CREATE TABLE IF NOT EXISTS orders ("
            "id serial PRIMARY KEY, status text NOT NULL, "
            "total_amount numeric(10, 2), "
            "created_at timestamptz NOT NULL DEFAULT now(), "
            "updated_at timestamptz NOT NULL DEFAULT now())"
        )
        async with store.transaction() as tx:
            order_id = await tx.fetchval(
                "INSERT INTO orders (status, total_amount) "
                "VALUES ('pending', 42.00) RETURNING id"
            )
            await outbox.enqueue(
                tx,
                aggregate_type="order",
                aggregate_id=str(order_id),
                event_type="OrderCreated",
                payload={"order_id": order_id, "total_amount": 42.0},
            )
        console.print(f"[green]Order written:[/green] {order_id}")

        # 4. Drain the outbox once
        async def publish(entry: OutboxEntry) -> None:
            console.print(f"  outbox -> {entry.event_type} {entry.payload}")

        marked = await OutboxDrainWorker(outbox, config.outbox, publish).drain_once()
        console.print(f"[green]Outbox entries relayed:[/green] {marked}")

        # 5. Poll the order table once
        registry = EventDispatchRegistry()

        async def show(event: ChangeEvent) -> None:
            console.print(f"  poller -> {event.operation} {event.to_dict()['after']}")

        registry.subscribe("orders", show)
        poller = ChangePoller(store, registry, config.tables, config.poller)
        console.print(f"[green]Changes polled:[/green] {await poller.poll_once()}")
    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(demo())

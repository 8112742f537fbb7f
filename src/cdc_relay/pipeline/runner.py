"""Relay orchestrator: wires stores, capture loops and supervisors."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from cdc_relay.config.models import RelayConfig, TableKind
from cdc_relay.errors import ConfigurationError
from cdc_relay.events.handlers import (
    GenericChangeHandler,
    OrderChangeHandler,
    OrderWorkflow,
    OutboxChangeHandler,
)
from cdc_relay.events.registry import EventDispatchRegistry
from cdc_relay.observability.http_health import HealthServer
from cdc_relay.outbox.models import OutboxEntry
from cdc_relay.outbox.store import OutboxStore
from cdc_relay.outbox.worker import OutboxDrainWorker
from cdc_relay.processing.dead_letter import DeadLetterWriter
from cdc_relay.processing.processor import BatchEventProcessor
from cdc_relay.sources.base import ChangeSource
from cdc_relay.sources.poller.poller import ChangePoller
from cdc_relay.sources.wal.coordinator import ReplicationCoordinator
from cdc_relay.sources.wal.monitor import ReplicationHealthMonitor
from cdc_relay.sources.wal.reader import SlotChangeReader
from cdc_relay.sources.wal.slot_manager import SlotManager
from cdc_relay.sources.wal.subscription import SubscriptionManager
from cdc_relay.store.base import DataStore
from cdc_relay.store.postgres import PostgresStore

logger = structlog.get_logger()


class Relay:
    """Runs every enabled capture path and supervisor in one event loop.

    Each component owns its own task; a failure in one is logged and never
    stops the others.  ``stop()`` cancels them all and closes the stores.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        registry: EventDispatchRegistry | None = None,
        workflow: OrderWorkflow | None = None,
        store: DataStore | None = None,
        target_store: DataStore | None = None,
    ) -> None:
        if config.source is None:
            msg = "A source database connection is required (config key 'source')"
            raise ConfigurationError(msg)

        self._config = config
        self.registry = registry or EventDispatchRegistry()
        self._source_conninfo = config.source.conninfo()
        self._store = store or PostgresStore(self._source_conninfo, name="source")
        self._target_store = target_store
        if self._target_store is None and config.target is not None:
            self._target_store = PostgresStore(
                config.target.conninfo(), name="target"
            )

        self._stop_event = asyncio.Event()
        self._health_server: HealthServer | None = None

        self.order_handler = OrderChangeHandler(
            workflow,
            tables=[t.name for t in config.tables_of_kind(TableKind.ORDER)],
        )
        self.outbox_handler = OutboxChangeHandler(
            tables=[t.name for t in config.tables_of_kind(TableKind.OUTBOX)],
        )
        self.registry.register(self.order_handler)
        self.registry.register(self.outbox_handler)
        self.registry.register(GenericChangeHandler())

        self.dead_letter = DeadLetterWriter(
            self._store,
            config.processor.dead_letter_table,
            enabled=config.processor.dead_letter_enabled,
        )
        self.processor = BatchEventProcessor(
            self._store,
            config.processor,
            order_tables=[t.name for t in config.tables_of_kind(TableKind.ORDER)],
            outbox_tables=[t.name for t in config.tables_of_kind(TableKind.OUTBOX)],
            registry=self.registry,
            dead_letter=self.dead_letter,
        )

        self.poller: ChangeSource | None = None
        if config.poller.enabled:
            self.poller = ChangePoller(
                PostgresStore(self._source_conninfo, name="poller"),
                self.registry,
                config.tables,
                config.poller,
                slot_name=(
                    config.replication.slot_name if config.replication.enabled else None
                ),
                owns_store=True,
            )

        self.outbox = OutboxStore(self._store, config.outbox)
        self.outbox_worker: OutboxDrainWorker | None = None
        if config.outbox.enabled:
            self.outbox_worker = OutboxDrainWorker(
                self.outbox, config.outbox, publish=self._publish_outbox_entry
            )

        self.slots: SlotManager | None = None
        self.monitor: ReplicationHealthMonitor | None = None
        self.coordinator: ReplicationCoordinator | None = None
        if config.replication.enabled:
            self._build_replication()

    def _build_replication(self) -> None:
        rep = self._config.replication
        self.slots = SlotManager(
            self._store,
            rep.slot_name,
            rep.publication_name,
            output_plugin=rep.output_plugin,
            cleanup_wait_seconds=rep.force_cleanup_wait_seconds,
        )
        if self._config.health_monitor.enabled:
            self.monitor = ReplicationHealthMonitor(
                self.slots, self._store, self._config.health_monitor
            )
        subscriptions = None
        if self._target_store is not None:
            subscriptions = SubscriptionManager(
                self._target_store,
                self._store,
                subscription_name=rep.subscription_name,
                publication_name=rep.publication_name,
                source_conninfo=self._source_conninfo,
                copy_data=rep.copy_existing_data,
            )
        reader = None
        if rep.consume_slot_changes:
            reader = SlotChangeReader(
                self._store,
                rep.slot_name,
                rep.publication_name,
                max_changes=rep.max_changes_per_read,
            )
        self.coordinator = ReplicationCoordinator(
            self.slots,
            rep,
            tables=[t.qualified_name for t in self._config.tables],
            subscriptions=subscriptions,
            monitor=self.monitor,
            reader=reader,
            consumer=self.processor.process_batch,
        )

    async def _publish_outbox_entry(self, entry: OutboxEntry) -> None:
        event = entry.to_change_event(
            self._config.outbox.schema_name, self._config.outbox.table_name
        )
        await self.registry.dispatch(event)

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Run the relay until interrupted (blocking)."""
        asyncio.run(self.run())

    async def run(self) -> None:
        try:
            await self.start_components()
            await self._stop_event.wait()
        finally:
            await self._shutdown()

    def stop(self) -> None:
        self._stop_event.set()

    async def start_components(self) -> None:
        if self._config.outbox.create_table:
            await self.outbox.ensure_table()
        if self._config.processor.dead_letter_enabled:
            await self.dead_letter.ensure_table()

        if self.poller is not None:
            await self.poller.start()
        if self.outbox_worker is not None:
            await self.outbox_worker.start()
        if self.coordinator is not None:
            await self.coordinator.start()
        if self.monitor is not None:
            await self.monitor.start()

        if self._config.health_enabled:
            self._health_server = HealthServer(
                port=self._config.health_port,
                readiness_check=self.health,
            )
            await self._health_server.start()

        logger.info(
            "relay.started",
            relay_id=self._config.relay_id,
            source=self._config.source.describe() if self._config.source else None,
            tables=[t.qualified_name for t in self._config.tables],
            poller=self.poller is not None,
            outbox=self.outbox_worker is not None,
            replication=self.coordinator is not None,
        )

    async def _shutdown(self) -> None:
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None
        components = (self.monitor, self.coordinator, self.outbox_worker, self.poller)
        for component in components:
            if component is None:
                continue
            try:
                await component.stop()
            except Exception as exc:
                logger.warning(
                    "relay.component_stop_failed",
                    component=type(component).__name__,
                    error=str(exc),
                )
        await self.order_handler.drain()
        await self._store.close()
        if self._target_store is not None:
            await self._target_store.close()
        logger.info("relay.stopped", relay_id=self._config.relay_id)

    async def health(self) -> dict[str, Any]:
        """Aggregate status document for /readyz and /status."""
        result: dict[str, Any] = {"relay_id": self._config.relay_id}
        if self.poller is not None:
            result["poller"] = self.poller.get_status().to_dict()
        if self.outbox_worker is not None:
            result["outbox"] = self.outbox_worker.get_status().to_dict()
        if self.coordinator is not None:
            result["replication"] = self.coordinator.get_status().to_dict()
        if self.monitor is not None and self.monitor.latest is not None:
            result["replication_health"] = self.monitor.latest.to_dict()
        result["processor"] = (await self.processor.get_stats()).to_dict()
        return result

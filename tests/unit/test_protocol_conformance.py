"""Protocol conformance: implementations satisfy the protocols they serve."""

from __future__ import annotations

from cdc_relay.config.models import HealthMonitorConfig, PollerConfig, TableConfig
from cdc_relay.events.handlers import (
    GenericChangeHandler,
    OrderChangeHandler,
    OutboxChangeHandler,
)
from cdc_relay.events.registry import ChangeHandler, EventDispatchRegistry
from cdc_relay.sources.base import ChangeSource
from cdc_relay.sources.monitor import SourceMonitor
from cdc_relay.sources.poller.poller import ChangePoller
from cdc_relay.sources.wal.monitor import ReplicationHealthMonitor
from cdc_relay.sources.wal.slot_manager import SlotManager
from cdc_relay.store.base import DataStore
from cdc_relay.store.postgres import PostgresStore


class TestProtocolConformance:
    # -- stores ----------------------------------------------------------------
    def test_postgres_store_satisfies_data_store(self):
        assert isinstance(PostgresStore("host=localhost dbname=shop"), DataStore)

    def test_test_double_satisfies_data_store(self, store):
        assert isinstance(store, DataStore)

    # -- sources ---------------------------------------------------------------
    def test_poller_satisfies_change_source(self, store):
        poller = ChangePoller(
            store, EventDispatchRegistry(), [TableConfig(name="orders")], PollerConfig()
        )
        assert isinstance(poller, ChangeSource)

    def test_health_monitor_satisfies_source_monitor(self, store):
        monitor = ReplicationHealthMonitor(
            SlotManager(store, "slot", "publication"), store, HealthMonitorConfig()
        )
        assert isinstance(monitor, SourceMonitor)

    # -- handlers --------------------------------------------------------------
    def test_order_handler_satisfies_change_handler(self):
        assert isinstance(OrderChangeHandler(), ChangeHandler)

    def test_outbox_handler_satisfies_change_handler(self):
        assert isinstance(OutboxChangeHandler(), ChangeHandler)

    def test_generic_handler_satisfies_change_handler(self):
        handler = GenericChangeHandler()
        assert isinstance(handler, ChangeHandler)
        assert handler.catch_all is True

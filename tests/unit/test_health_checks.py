"""Unit tests for the one-shot relay health checks."""

from __future__ import annotations

from cdc_relay.config.models import DatabaseConfig, RelayConfig, ReplicationConfig
from cdc_relay.observability.health import (
    Status,
    check_database,
    check_logical_replication,
    check_relay_health,
    check_slot,
)
from cdc_relay.sources.wal.slot_manager import SlotManager

SLOT_ROW = {
    "slot_name": "order_events_slot",
    "active": True,
    "restart_lsn": "0/100",
    "confirmed_flush_lsn": "0/100",
    "lag_bytes": 64,
}


def _config(**overrides) -> RelayConfig:
    return RelayConfig(source=DatabaseConfig(), **overrides)


class TestComponentChecks:
    async def test_database_reachable(self, store):
        store.script("server_version", "16.4")
        result = await check_database(store, "target")
        assert result.name == "target"
        assert result.status == Status.HEALTHY
        assert result.detail == "PostgreSQL 16.4"

    async def test_database_unreachable(self, store):
        store.fail("server_version", OSError("connection refused"))
        result = await check_database(store)
        assert result.status == Status.UNHEALTHY
        assert "connection refused" in result.detail

    async def test_wal_level(self, store):
        store.script("wal_level", "replica", "logical")
        assert (await check_logical_replication(store)).status == Status.UNHEALTHY
        assert (await check_logical_replication(store)).status == Status.HEALTHY

    async def test_slot(self, store):
        slots = SlotManager(store, "order_events_slot", "cdc_publication")
        assert (await check_slot(slots)).status == Status.UNHEALTHY

        store.script("pg_replication_slots", SLOT_ROW)
        result = await check_slot(slots)
        assert result.status == Status.HEALTHY
        assert "lag_bytes=64" in result.detail


class TestRelayHealth:
    async def test_all_components(self, store, store_factory):
        store.script("server_version", "16.4")
        store.script("wal_level", "logical")
        store.script("pg_replication_slots", SLOT_ROW)
        target = store_factory()
        target.script("server_version", "16.4")

        health = await check_relay_health(_config(), store, target)

        assert health.healthy
        assert health.summary == {
            "source": "healthy",
            "target": "healthy",
            "wal-level": "healthy",
            "replication-slot": "healthy",
        }

    async def test_replication_checks_skipped_when_disabled(self, store):
        store.script("server_version", "16.4")
        health = await check_relay_health(
            _config(replication=ReplicationConfig(enabled=False)), store
        )
        assert [c.name for c in health.components] == ["source"]
        assert health.healthy

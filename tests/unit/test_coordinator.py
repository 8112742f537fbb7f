"""Unit tests for the logical replication coordinator."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from cdc_relay.config.models import ReplicationConfig, RetryConfig
from cdc_relay.errors import ReplicationError
from cdc_relay.sources.wal.coordinator import ReplicationCoordinator
from cdc_relay.sources.wal.models import CoordinatorState
from cdc_relay.sources.wal.reader import SlotChangeReader
from cdc_relay.sources.wal.slot_manager import SlotManager
from cdc_relay.sources.wal.subscription import SubscriptionManager

SLOT_QUERY = "FROM pg_replication_slots WHERE slot_name"
PRIVILEGE = "pg_roles"


def _slot(active: bool, confirmed: str | None) -> dict[str, Any]:
    return {
        "slot_name": "order_events_slot",
        "active": active,
        "active_pid": 99 if active else None,
        "restart_lsn": "0/1000000",
        "confirmed_flush_lsn": confirmed,
        "lag_bytes": 0,
    }


def _coordinator(
    store: Any,
    sleep: Any,
    *,
    retry: RetryConfig | None = None,
    **kwargs: Any,
) -> ReplicationCoordinator:
    overrides = {
        k: kwargs.pop(k)
        for k in ("create_slot_if_missing", "consume_slot_changes")
        if k in kwargs
    }
    config = ReplicationConfig(retry=retry or RetryConfig(), **overrides)
    slots = SlotManager(store, config.slot_name, config.publication_name)
    return ReplicationCoordinator(
        slots,
        config,
        tables=["public.orders", "public.outbox_events"],
        sleep=sleep,
        **kwargs,
    )


class TestProvisioningBackoff:
    async def test_circuit_opens_after_max_attempts(self, store, recording_sleep):
        store.fail(PRIVILEGE, ConnectionError("connection refused"))
        coordinator = _coordinator(
            store,
            recording_sleep,
            retry=RetryConfig(
                base_delay_seconds=2, max_delay_seconds=60, max_attempts=3
            ),
        )

        assert await coordinator.run_provisioning() is False

        assert len(store.queries(PRIVILEGE)) == 3
        assert recording_sleep.delays == [2.0, 4.0]
        status = coordinator.get_status()
        assert status.state == CoordinatorState.STOPPED
        assert status.consecutive_errors == 3
        assert status.error_count == 3
        assert status.last_error == "connection refused"
        assert status.to_dict()["status"] == "error"

    async def test_delay_capped_at_max(self, store, recording_sleep):
        store.fail(PRIVILEGE, ConnectionError("down"))
        coordinator = _coordinator(
            store,
            recording_sleep,
            retry=RetryConfig(
                base_delay_seconds=5, max_delay_seconds=8, max_attempts=4
            ),
        )

        await coordinator.run_provisioning()

        assert recording_sleep.delays == [5.0, 8.0, 8.0]

    async def test_recovers_after_transient_failures(self, store, recording_sleep):
        store.script(
            PRIVILEGE,
            ConnectionError("reset"),
            ConnectionError("reset"),
            {"?column?": 1},
        )
        coordinator = _coordinator(
            store,
            recording_sleep,
            retry=RetryConfig(
                base_delay_seconds=1, max_delay_seconds=60, max_attempts=5
            ),
        )

        assert await coordinator.run_provisioning() is True

        assert recording_sleep.delays == [1.0, 2.0]
        status = coordinator.get_status()
        assert status.consecutive_errors == 2
        assert status.error_count == 2
        assert len(store.queries("CREATE PUBLICATION")) == 1
        assert len(store.queries("pg_create_logical_replication_slot")) == 1

    async def test_supervisor_ends_when_circuit_opens(self, store, recording_sleep):
        store.fail(PRIVILEGE, ConnectionError("refused"))
        coordinator = _coordinator(
            store,
            recording_sleep,
            retry=RetryConfig(
                base_delay_seconds=1, max_delay_seconds=1, max_attempts=2
            ),
        )

        await coordinator.start()
        await coordinator.wait()

        status = coordinator.get_status()
        assert status.is_running is False
        assert status.state == CoordinatorState.STOPPED
        await coordinator.stop()


class TestSlotHandling:
    async def test_missing_slot_created(self, store, recording_sleep):
        await _coordinator(store, recording_sleep).provision()
        assert len(store.queries("pg_create_logical_replication_slot")) == 1

    async def test_missing_slot_without_create_permission(self, store, recording_sleep):
        coordinator = _coordinator(
            store, recording_sleep, create_slot_if_missing=False
        )
        with pytest.raises(ReplicationError, match="does not exist"):
            await coordinator.provision()

    async def test_active_slot_untouched(self, store, recording_sleep):
        store.script(SLOT_QUERY, _slot(active=True, confirmed="0/1000100"))
        await _coordinator(store, recording_sleep).provision()
        assert store.queries("pg_drop_replication_slot") == []
        assert store.queries("pg_create_logical_replication_slot") == []

    async def test_inactive_slot_with_confirmed_lsn_kept(self, store, recording_sleep):
        store.script(SLOT_QUERY, _slot(active=False, confirmed="0/1000100"))
        await _coordinator(store, recording_sleep).provision()
        assert store.queries("pg_drop_replication_slot") == []

    @pytest.mark.parametrize("confirmed", [None, "0/0", "N/A", ""])
    async def test_inactive_slot_without_position_reset(
        self, store, recording_sleep, confirmed
    ):
        store.script(SLOT_QUERY, _slot(active=False, confirmed=confirmed))
        await _coordinator(store, recording_sleep).provision()
        assert len(store.queries("pg_drop_replication_slot")) == 1
        assert len(store.queries("pg_create_logical_replication_slot")) == 1

    async def test_failed_reset_raises(self, store, recording_sleep):
        store.script(SLOT_QUERY, _slot(active=False, confirmed=None))
        store.fail("pg_drop_replication_slot", RuntimeError("in use"))
        with pytest.raises(ReplicationError, match="in use"):
            await _coordinator(store, recording_sleep).provision()

    async def test_inactive_slot_diagnosed(self, store, recording_sleep):
        store.script(SLOT_QUERY, _slot(active=False, confirmed="0/1000100"))
        monitor = MagicMock()
        monitor.diagnose = AsyncMock()
        await _coordinator(store, recording_sleep, monitor=monitor).provision()
        monitor.diagnose.assert_awaited_once()


class TestSubscriptionAndHeartbeat:
    async def test_subscription_ensured(self, store, recording_sleep):
        subscriptions = AsyncMock(spec=SubscriptionManager)
        await _coordinator(
            store, recording_sleep, subscriptions=subscriptions
        ).provision()
        subscriptions.ensure_subscription.assert_awaited_once()

    async def test_heartbeat_records_subscription_and_consumes(
        self, store, recording_sleep
    ):
        subscriptions = AsyncMock(spec=SubscriptionManager)
        subscriptions.get_state.return_value = {"name": "sub", "enabled": True}
        subscriptions.get_lag_bytes.return_value = 512
        reader = AsyncMock(spec=SlotChangeReader)
        reader.read.return_value = 5
        consumer = AsyncMock()

        coordinator = _coordinator(
            store,
            recording_sleep,
            consume_slot_changes=True,
            subscriptions=subscriptions,
            reader=reader,
            consumer=consumer,
        )
        await coordinator.heartbeat()
        await coordinator.heartbeat()

        reader.read.assert_awaited_with(consumer)
        status = coordinator.get_status()
        assert status.messages_replicated == 10
        assert status.lag_bytes == 512
        assert status.subscription_state == {"name": "sub", "enabled": True}

    async def test_heartbeat_skips_reader_when_disabled(self, store, recording_sleep):
        reader = AsyncMock(spec=SlotChangeReader)
        coordinator = _coordinator(
            store, recording_sleep, reader=reader, consumer=AsyncMock()
        )
        await coordinator.heartbeat()
        reader.read.assert_not_awaited()

    async def test_status_is_a_copy(self, store, recording_sleep):
        subscriptions = AsyncMock(spec=SubscriptionManager)
        subscriptions.get_state.return_value = {"enabled": True}
        subscriptions.get_lag_bytes.return_value = 0
        coordinator = _coordinator(
            store, recording_sleep, subscriptions=subscriptions
        )
        await coordinator.heartbeat()

        snapshot = coordinator.get_status()
        assert snapshot.subscription_state is not None
        snapshot.subscription_state["enabled"] = False
        assert coordinator.get_status().subscription_state == {"enabled": True}


class TestHeartbeatFailures:
    async def test_repeated_failures_back_off_and_open_circuit(
        self, store, recording_sleep
    ):
        subscriptions = AsyncMock(spec=SubscriptionManager)
        subscriptions.get_state.side_effect = RuntimeError("lag query failed")
        coordinator = _coordinator(
            store,
            recording_sleep,
            retry=RetryConfig(
                base_delay_seconds=1, max_delay_seconds=60, max_attempts=3
            ),
            subscriptions=subscriptions,
        )

        await coordinator.start()
        await coordinator.wait()

        assert len(store.queries(PRIVILEGE)) == 3
        assert subscriptions.get_state.await_count == 3
        assert recording_sleep.delays == [1.0, 2.0]
        status = coordinator.get_status()
        assert status.state == CoordinatorState.STOPPED
        assert status.is_running is False
        assert status.consecutive_errors == 3
        assert status.error_count == 3
        assert status.last_error == "lag query failed"
        await coordinator.stop()

    async def test_successful_heartbeat_resets_consecutive_errors(
        self, store, recording_sleep
    ):
        subscriptions = AsyncMock(spec=SubscriptionManager)
        subscriptions.get_state.side_effect = [
            RuntimeError("timeout"),
            {"enabled": True},
            RuntimeError("timeout"),
            RuntimeError("timeout"),
        ]
        subscriptions.get_lag_bytes.return_value = 0
        coordinator = _coordinator(
            store,
            recording_sleep,
            retry=RetryConfig(
                base_delay_seconds=1, max_delay_seconds=60, max_attempts=2
            ),
            subscriptions=subscriptions,
        )

        await coordinator.start()
        await coordinator.wait()

        heartbeat_interval = ReplicationConfig().heartbeat_interval_seconds
        assert recording_sleep.delays == [1.0, heartbeat_interval, 1.0]
        status = coordinator.get_status()
        assert status.state == CoordinatorState.STOPPED
        assert status.consecutive_errors == 2
        assert status.error_count == 3
        await coordinator.stop()

    async def test_provisioning_failure_after_heartbeat_failure_shares_budget(
        self, store, recording_sleep
    ):
        subscriptions = AsyncMock(spec=SubscriptionManager)
        subscriptions.get_state.side_effect = RuntimeError("timeout")
        store.script(PRIVILEGE, None, ConnectionError("refused"))
        coordinator = _coordinator(
            store,
            recording_sleep,
            retry=RetryConfig(
                base_delay_seconds=2, max_delay_seconds=60, max_attempts=3
            ),
            subscriptions=subscriptions,
        )

        await coordinator.start()
        await coordinator.wait()

        assert recording_sleep.delays == [2.0, 4.0]
        assert len(store.queries(PRIVILEGE)) == 3
        status = coordinator.get_status()
        assert status.state == CoordinatorState.STOPPED
        assert status.consecutive_errors == 3
        assert status.last_error == "refused"
        await coordinator.stop()

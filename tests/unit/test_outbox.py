"""Unit tests for the outbox store and drain worker."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from cdc_relay.config.models import OutboxConfig
from cdc_relay.outbox.models import OutboxEntry
from cdc_relay.outbox.store import OutboxStore
from cdc_relay.outbox.worker import OutboxDrainWorker

T0 = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)
NOW = datetime(2026, 5, 1, 9, 5, tzinfo=UTC)

FETCH = "ORDER BY created_at ASC"
TRACKED = "AND retry_count = %s"
MARK = "SET processed = true"
RELOAD = '"outbox_events" WHERE id = %s'
INCREMENT = "retry_count = retry_count + 1"


def _row(entry_id: str, offset: int = 0, **overrides: Any) -> dict[str, Any]:
    row = {
        "id": entry_id,
        "aggregate_type": "order",
        "aggregate_id": "42",
        "event_type": "OrderCreated",
        "payload": json.dumps({"order_id": 42}),
        "created_at": T0 + timedelta(seconds=offset),
        "processed": False,
        "processed_at": None,
        "retry_count": 0,
    }
    row.update(overrides)
    return row


class StopLoop(Exception):
    pass


def _worker(
    store: Any, publish: Any = None, sleep: Any = None, **config: Any
) -> OutboxDrainWorker:
    cfg = OutboxConfig(**config)
    kwargs: dict[str, Any] = {"clock": lambda: NOW}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return OutboxDrainWorker(OutboxStore(store, cfg), cfg, publish, **kwargs)


class TestOutboxEntry:
    def test_from_row_decodes_json_payload(self):
        entry = OutboxEntry.from_row(_row("a"))
        assert entry.payload == {"order_id": 42}
        assert entry.processed is False
        assert entry.retry_count == 0

    def test_to_change_event(self):
        entry = OutboxEntry.from_row(_row("a"))
        event = entry.to_change_event("public", "outbox_events")
        assert event.operation == "insert"
        assert event.table_name == "outbox_events"
        assert event.row["event_type"] == "OrderCreated"
        assert event.event_time == T0
        assert event.metadata["source"] == "outbox"


class TestOutboxStore:
    async def test_enqueue_uses_callers_transaction(self, store, store_factory):
        tx = store_factory()
        tx.script("INSERT INTO", _row("new"))
        outbox = OutboxStore(store, OutboxConfig())

        entry = await outbox.enqueue(
            tx,
            aggregate_type="order",
            aggregate_id="42",
            event_type="OrderCreated",
            payload={"order_id": 42},
        )

        assert entry.id == "new"
        assert store.executed == []
        (query, params), = tx.queries("INSERT INTO")
        assert '"public"."outbox_events"' in query
        assert params[:3] == ("order", "42", "OrderCreated")
        assert json.loads(params[3]) == {"order_id": 42}

    async def test_fetch_unprocessed_respects_limit(self, store):
        store.script(FETCH, [_row("a"), _row("b", 1)])
        outbox = OutboxStore(store, OutboxConfig())

        entries = await outbox.fetch_unprocessed(2)

        assert [e.id for e in entries] == ["a", "b"]
        (query, params), = store.queries(FETCH)
        assert "processed = false" in query
        assert params == (2,)

    async def test_ensure_table(self, store):
        await OutboxStore(store, OutboxConfig()).ensure_table()
        assert store.queries("CREATE TABLE IF NOT EXISTS")
        assert store.queries("WHERE NOT processed")

    async def test_pending_count(self, store):
        store.script("count(*)", {"count": 4})
        assert await OutboxStore(store, OutboxConfig()).pending_count() == 4


class TestDrainWorker:
    async def test_publishes_then_marks_in_creation_order(self, store):
        store.script(FETCH, [_row("a"), _row("b", 1)])
        published: list[tuple[str, int]] = []

        async def publish(entry: OutboxEntry) -> None:
            published.append((entry.id, len(store.queries(MARK))))

        worker = _worker(store, publish)
        assert await worker.drain_once() == 2

        assert published == [("a", 0), ("b", 1)]
        marks = store.queries(TRACKED)
        assert [p for _, p in marks] == [(NOW, "a", 0), (NOW, "b", 0)]
        status = worker.get_status()
        assert status.processed_count == 2
        assert status.failed_count == 0
        assert status.last_run == NOW

    async def test_failed_publish_leaves_entry_unprocessed(self, store):
        store.script(FETCH, [_row("a")])
        store.script(RELOAD, _row("a"))
        attempts: list[str] = []

        async def publish(entry: OutboxEntry) -> None:
            attempts.append(entry.id)
            msg = "broker down"
            raise ConnectionError(msg)

        worker = _worker(store, publish)
        assert await worker.drain_once() == 0

        assert store.queries(MARK) == []
        assert [p for _, p in store.queries(INCREMENT)] == [("a",)]
        status = worker.get_status()
        assert status.failed_count == 1
        assert status.last_error == "broker down"

        # Still unprocessed in the table, so the next tick delivers it again.
        assert await worker.drain_once() == 0
        assert attempts == ["a", "a"]

    async def test_tracked_miss_falls_back_to_direct_update(self, store):
        store.script(FETCH, [_row("a", retry_count=2)])
        store.script(MARK, 1)
        store.script(TRACKED, 0)

        worker = _worker(store)
        assert await worker.drain_once() == 1

        tracked, direct = store.queries(MARK)
        assert tracked[1] == (NOW, "a", 2)
        assert TRACKED not in direct[0]
        assert direct[1] == (NOW, "a")
        assert worker.get_status().fallback_updates == 1

    async def test_restore_failure_is_contained(self, store):
        store.script(FETCH, [_row("a"), _row("b", 1)])
        store.fail(RELOAD, ConnectionError("gone"))

        async def publish(entry: OutboxEntry) -> None:
            if entry.id == "a":
                msg = "bad payload"
                raise ValueError(msg)

        worker = _worker(store, publish)
        assert await worker.drain_once() == 1
        assert worker.get_status().failed_count == 1

    async def test_empty_batch(self, store):
        worker = _worker(store)
        assert await worker.drain_once() == 0
        assert worker.get_status().last_run == NOW

    async def test_store_outage_backs_off(self, store):
        store.fail(FETCH, ConnectionError("connection refused"))
        delays: list[float] = []

        async def sleep(seconds: float) -> None:
            delays.append(seconds)
            if len(delays) == 2:
                raise StopLoop

        worker = _worker(
            store, sleep=sleep, interval_seconds=2.0, error_backoff_multiplier=5.0
        )
        with pytest.raises(StopLoop):
            await worker._run_loop()

        assert delays == [10.0, 10.0]
        assert worker.get_status().last_error == "connection refused"

    async def test_healthy_loop_uses_base_interval(self, store):
        delays: list[float] = []

        async def sleep(seconds: float) -> None:
            delays.append(seconds)
            raise StopLoop

        worker = _worker(store, sleep=sleep, interval_seconds=0.5)
        with pytest.raises(StopLoop):
            await worker._run_loop()
        assert delays == [0.5]

    async def test_start_stop(self, store):
        worker = _worker(store, interval_seconds=0.01)
        await worker.start()
        await asyncio.sleep(0.05)
        assert worker.get_status().is_running
        await worker.stop()

        status = worker.get_status()
        assert not status.is_running
        assert status.to_dict()["status"] == "stopped"

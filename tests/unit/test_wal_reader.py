"""Unit tests for the slot change reader."""

from __future__ import annotations

import struct

import pytest

from cdc_relay.events.model import ChangeEvent
from cdc_relay.sources.wal.reader import SlotChangeReader

PEEK = "pg_logical_slot_peek_binary_changes"
ADVANCE = "pg_replication_slot_advance"


def _relation() -> bytes:
    data = b"R" + struct.pack("!I", 1) + b"public\x00orders\x00d"
    data += struct.pack("!H", 2)
    for name, oid in (("id", 23), ("status", 25)):
        data += b"\x00" + name.encode() + b"\x00" + struct.pack("!Ii", oid, -1)
    return data


def _insert(order_id: int, status: str) -> bytes:
    data = b"I" + struct.pack("!I", 1) + b"N" + struct.pack("!H", 2)
    for value in (str(order_id), status):
        data += b"t" + struct.pack("!I", len(value)) + value.encode()
    return data


def _peek_rows() -> list[dict[str, object]]:
    begin = b"B" + struct.pack("!QqI", 0x3000100, 0, 55)
    return [
        {"lsn": "0/3000000", "xid": "55", "data": begin},
        {"lsn": "0/3000000", "xid": "55", "data": _relation()},
        {"lsn": "0/3000040", "xid": "55", "data": _insert(1, "pending")},
        {"lsn": "0/3000080", "xid": "55", "data": _insert(2, "paid")},
        {"lsn": "0/3000100", "xid": "55", "data": b"C" + b"\x00" * 25},
    ]


class _Consumer:
    def __init__(self, error: Exception | None = None) -> None:
        self.batches: list[list[ChangeEvent]] = []
        self.error = error

    async def __call__(self, events: list[ChangeEvent]) -> None:
        self.batches.append(events)
        if self.error is not None:
            raise self.error


def _reader(store) -> SlotChangeReader:
    return SlotChangeReader(
        store, "order_events_slot", "cdc_publication", max_changes=250
    )


class TestSlotChangeReader:
    async def test_peeks_consumes_then_advances(self, store):
        store.script(PEEK, _peek_rows())
        consumer = _Consumer()

        assert await _reader(store).read(consumer) == 2

        (peek_query, peek_params), = store.queries(PEEK)
        assert "'proto_version', '1'" in peek_query
        assert peek_params == ("order_events_slot", 250, "cdc_publication")

        (batch,) = consumer.batches
        assert [e.primary_key() for e in batch] == [1, 2]
        assert [e.position for e in batch] == ["0/3000040", "0/3000080"]
        assert batch[0].transaction_id == "55"

        (_, advance_params), = store.queries(ADVANCE)
        assert advance_params == ("order_events_slot", "0/3000100")
        assert store.executed.index(store.queries(ADVANCE)[0]) > store.executed.index(
            store.queries(PEEK)[0]
        )

    async def test_empty_slot_not_advanced(self, store):
        consumer = _Consumer()
        assert await _reader(store).read(consumer) == 0
        assert consumer.batches == []
        assert store.queries(ADVANCE) == []

    async def test_consumer_failure_leaves_changes_in_slot(self, store):
        store.script(PEEK, _peek_rows())
        consumer = _Consumer(RuntimeError("target unavailable"))

        with pytest.raises(RuntimeError, match="target unavailable"):
            await _reader(store).read(consumer)

        assert store.queries(ADVANCE) == []

    async def test_transaction_without_row_changes_still_advances(self, store):
        rows = _peek_rows()
        store.script(PEEK, [rows[0], rows[4]])
        consumer = _Consumer()

        assert await _reader(store).read(consumer) == 0

        assert consumer.batches == []
        (_, params), = store.queries(ADVANCE)
        assert params[1] == "0/3000100"

"""Unit tests for the normalized change event."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from cdc_relay.events.model import (
    ChangeEvent,
    Operation,
    changed_columns,
    format_value,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestOperation:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("INSERT", Operation.INSERT),
            ("update", Operation.UPDATE),
            ("D", Operation.DELETE),
            (" i ", Operation.INSERT),
        ],
    )
    def test_parse(self, raw: str, expected: Operation):
        assert Operation.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown operation"):
            Operation.parse("TRUNCATE")


class TestFormatValue:
    def test_naive_datetime_assumed_utc(self):
        naive = datetime(2026, 1, 2, 3, 4, 5)
        assert format_value(naive) == "2026-01-02T03:04:05+00:00"

    def test_scalars(self):
        uid = uuid.UUID("12345678-1234-5678-1234-567812345678")
        assert format_value(uid) == str(uid)
        assert format_value(Decimal("19.99")) == 19.99
        assert format_value(date(2026, 1, 2)) == "2026-01-02"
        assert format_value(b"\x01\xff") == "01ff"
        assert format_value(True) is True
        assert format_value(None) is None

    def test_nested(self):
        value = {"items": [Decimal("1.5"), {"at": T0}]}
        assert format_value(value) == {"items": [1.5, {"at": T0.isoformat()}]}


class TestChangedColumns:
    def test_diff(self):
        before = {"id": 1, "status": "pending", "note": None}
        after = {"id": 1, "status": "shipped", "note": "x"}
        assert changed_columns(before, after) == frozenset({"status", "note"})

    def test_missing_image(self):
        assert changed_columns(None, {"id": 1}) == frozenset()


class TestChangeEvent:
    def test_insert_drops_before(self):
        event = ChangeEvent.build(
            "INSERT", "public", "orders", before={"id": 1}, after={"id": 1}
        )
        assert event.operation is Operation.INSERT
        assert event.before is None
        assert event.after == {"id": 1}
        assert event.changed_columns == frozenset()

    def test_delete_drops_after(self):
        event = ChangeEvent.build(
            Operation.DELETE, "public", "orders", before={"id": 7}, after={"id": 7}
        )
        assert event.after is None
        assert event.row == {"id": 7}
        assert event.primary_key() == 7

    def test_update_computes_changed_columns(self):
        event = ChangeEvent.build(
            Operation.UPDATE,
            "public",
            "orders",
            before={"id": 1, "status": "pending", "total_amount": Decimal("10")},
            after={"id": 1, "status": "confirmed", "total_amount": Decimal("10")},
            event_time=T0,
        )
        assert event.changed_columns == frozenset({"status"})
        assert event.after is not None
        assert event.after["total_amount"] == 10.0

    def test_event_time_defaults_to_now(self):
        event = ChangeEvent.build(Operation.INSERT, "public", "orders", after={})
        assert event.event_time.tzinfo is not None

    def test_frozen(self):
        event = ChangeEvent.build(Operation.INSERT, "public", "orders", after={})
        with pytest.raises(AttributeError):
            event.table_name = "other"  # type: ignore[misc]

    def test_to_dict(self):
        event = ChangeEvent.build(
            Operation.UPDATE,
            "public",
            "orders",
            before={"id": 1, "status": "a"},
            after={"id": 1, "status": "b"},
            event_time=T0,
            transaction_id="731",
            position="0/16B3748",
            metadata={"source": "slot"},
        )
        data = event.to_dict()
        assert data["operation"] == "update"
        assert data["schema"] == "public"
        assert data["table"] == "orders"
        assert data["event_time"] == T0.isoformat()
        assert data["changed_columns"] == ["status"]
        assert data["position"] == "0/16B3748"
        assert data["metadata"] == {"source": "slot"}
        assert event.qualified_table == "public.orders"

    def test_to_dict_omits_empty_fields(self):
        event = ChangeEvent.build(
            Operation.INSERT, "public", "orders", after={"id": 1}, event_time=T0
        )
        assert set(event.to_dict()) == {
            "operation",
            "schema",
            "table",
            "event_time",
            "after",
        }

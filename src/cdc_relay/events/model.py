"""Normalized change event envelope.

Every capture path (outbox drain, watermark poller, slot reader) converts
its native row into a :class:`ChangeEvent` before handing it to consumers.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from decimal import Decimal
from enum import StrEnum
from typing import Any

Row = dict[str, Any]


class Operation(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: str) -> Operation:
        """Accept ``INSERT``/``insert``/``I`` style spellings."""
        text = value.strip().lower()
        for op in cls:
            if text in (op.value, op.value[0]):
                return op
        msg = f"Unknown operation: {value!r}"
        raise ValueError(msg)


def format_value(value: Any) -> Any:
    """Convert a database value into a JSON-friendly scalar.

    Timestamps become ISO-8601 strings, UUIDs strings and decimals floats.
    Booleans, ints, strings and None pass through unchanged.
    """
    if value is None or isinstance(value, bool | int | float | str):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.isoformat()
    if isinstance(value, date | time):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(k): format_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [format_value(v) for v in value]
    return str(value)


def format_row(row: Mapping[str, Any] | None) -> Row | None:
    if row is None:
        return None
    return {str(k): format_value(v) for k, v in row.items()}


def changed_columns(
    before: Mapping[str, Any] | None, after: Mapping[str, Any] | None
) -> frozenset[str]:
    """Columns whose value differs between *before* and *after*."""
    if before is None or after is None:
        return frozenset()
    keys = set(before) | set(after)
    return frozenset(k for k in keys if before.get(k) != after.get(k))


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A single captured row mutation.

    ``before`` is None for inserts and ``after`` is None for deletes.
    ``transaction_id`` and ``position`` are opaque ordering tokens whose
    meaning depends on the capture path (``xmin`` for polled rows, xid and
    LSN for slot-decoded rows).
    """

    operation: Operation
    schema_name: str
    table_name: str
    before: Row | None
    after: Row | None
    event_time: datetime
    transaction_id: str | None = None
    position: str | None = None
    changed_columns: frozenset[str] = field(default_factory=frozenset)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        operation: Operation | str,
        schema_name: str,
        table_name: str,
        *,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        event_time: datetime | None = None,
        transaction_id: str | None = None,
        position: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ChangeEvent:
        """Construct an event, formatting row values and computing changed columns."""
        op = (
            operation
            if isinstance(operation, Operation)
            else Operation.parse(operation)
        )
        before_row = None if op == Operation.INSERT else format_row(before)
        after_row = None if op == Operation.DELETE else format_row(after)
        changed = (
            changed_columns(before_row, after_row)
            if op == Operation.UPDATE
            else frozenset()
        )
        return cls(
            operation=op,
            schema_name=schema_name,
            table_name=table_name,
            before=before_row,
            after=after_row,
            event_time=event_time or datetime.now(tz=UTC),
            transaction_id=transaction_id,
            position=position,
            changed_columns=changed,
            metadata=dict(metadata or {}),
        )

    @property
    def row(self) -> Row:
        """The most recent row image (``after``, or ``before`` for deletes)."""
        return self.after if self.after is not None else (self.before or {})

    @property
    def qualified_table(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    def primary_key(self, column: str = "id") -> Any:
        return self.row.get(column)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "operation": self.operation.value,
            "schema": self.schema_name,
            "table": self.table_name,
            "event_time": self.event_time.isoformat(),
        }
        if self.before is not None:
            data["before"] = self.before
        if self.after is not None:
            data["after"] = self.after
        if self.transaction_id is not None:
            data["transaction_id"] = self.transaction_id
        if self.position is not None:
            data["position"] = self.position
        if self.changed_columns:
            data["changed_columns"] = sorted(self.changed_columns)
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

"""Outbox row model."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from cdc_relay.events.model import ChangeEvent, Operation


@dataclass(slots=True)
class OutboxEntry:
    """One row of the outbox table.

    ``processed`` moves from False to True exactly once in normal operation.
    It is reverted only when a failed publish reloads the persisted row.
    """

    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: Any
    created_at: datetime
    processed: bool = False
    processed_at: datetime | None = None
    retry_count: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> OutboxEntry:
        payload = row.get("payload")
        if isinstance(payload, str | bytes):
            payload = json.loads(payload)
        created = row.get("created_at") or datetime.now(tz=UTC)
        return cls(
            id=str(row["id"]),
            aggregate_type=str(row.get("aggregate_type") or ""),
            aggregate_id=str(row.get("aggregate_id") or ""),
            event_type=str(row.get("event_type") or ""),
            payload=payload,
            created_at=created,
            processed=bool(row.get("processed", False)),
            processed_at=row.get("processed_at"),
            retry_count=int(row.get("retry_count") or 0),
        )

    def to_change_event(self, schema_name: str, table_name: str) -> ChangeEvent:
        """Represent the entry as an insert on the outbox table."""
        return ChangeEvent.build(
            Operation.INSERT,
            schema_name,
            table_name,
            after={
                "id": self.id,
                "aggregate_type": self.aggregate_type,
                "aggregate_id": self.aggregate_id,
                "event_type": self.event_type,
                "payload": self.payload,
                "created_at": self.created_at,
                "retry_count": self.retry_count,
            },
            event_time=self.created_at,
            metadata={"source": "outbox"},
        )

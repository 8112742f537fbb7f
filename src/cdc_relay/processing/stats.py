"""Event processing statistics."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from cdc_relay.events.model import ChangeEvent


@dataclass(slots=True)
class EventProcessingStats:
    """Counters kept by the batch processor.

    ``total_processed`` counts every event that reached a final outcome,
    successful or not; ``failed_events`` is the failing subset.  Dropped
    events never reached processing and are counted separately.
    """

    total_processed: int = 0
    failed_events: int = 0
    dropped_events: int = 0
    average_processing_time_ms: float = 0.0
    events_by_type: dict[str, int] = field(default_factory=dict)
    events_by_table: dict[str, int] = field(default_factory=dict)
    last_processed_event: datetime | None = None

    @property
    def successful_events(self) -> int:
        return self.total_processed - self.failed_events

    def record(self, event: ChangeEvent, elapsed_ms: float, *, success: bool) -> None:
        self.total_processed += 1
        if not success:
            self.failed_events += 1
        # Incremental mean over every processed event.
        self.average_processing_time_ms += (
            elapsed_ms - self.average_processing_time_ms
        ) / self.total_processed
        op = event.operation.value
        table = event.table_name.lower()
        self.events_by_type[op] = self.events_by_type.get(op, 0) + 1
        self.events_by_table[table] = self.events_by_table.get(table, 0) + 1
        self.last_processed_event = datetime.now(tz=UTC)

    def copy(self) -> EventProcessingStats:
        return replace(
            self,
            events_by_type=dict(self.events_by_type),
            events_by_table=dict(self.events_by_table),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "successful_events": self.successful_events,
            "failed_events": self.failed_events,
            "dropped_events": self.dropped_events,
            "average_processing_time_ms": round(self.average_processing_time_ms, 3),
            "events_by_type": dict(self.events_by_type),
            "events_by_table": dict(self.events_by_table),
            "last_processed_event": (
                self.last_processed_event.isoformat()
                if self.last_processed_event
                else None
            ),
        }

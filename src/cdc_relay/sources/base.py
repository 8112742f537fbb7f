"""Lifecycle protocol shared by change sources and their status snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from cdc_relay.events.registry import HandlerFn


class SourceState(StrEnum):
    STOPPED = "stopped"
    INITIALIZING = "initializing"
    ACTIVE = "active"


@dataclass(frozen=True, slots=True)
class CdcStatus:
    """Point-in-time view of a change source.  Callers get a copy."""

    state: SourceState
    start_time: datetime | None = None
    last_activity: datetime | None = None
    events_processed: int = 0
    error_count: int = 0
    last_error: str | None = None
    subscriptions: dict[str, int] = field(default_factory=dict)
    slot_info: dict[str, Any] = field(default_factory=dict)
    watermarks: dict[str, datetime] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.state == SourceState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "running" if self.is_active else self.state.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "last_activity": (
                self.last_activity.isoformat() if self.last_activity else None
            ),
            "events_processed": self.events_processed,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "subscriptions": dict(self.subscriptions),
            "watermarks": {k: v.isoformat() for k, v in self.watermarks.items()},
        }


@runtime_checkable
class ChangeSource(Protocol):
    """Protocol every in-process change source satisfies."""

    async def start(self) -> None:
        """Begin capturing; a second call while running is a no-op."""
        ...

    async def stop(self) -> None:
        """Cancel background work and release owned connections."""
        ...

    def get_status(self) -> CdcStatus: ...

    def subscribe(self, table_name: str, handler: HandlerFn) -> None: ...

    def unsubscribe(self, table_name: str) -> None: ...

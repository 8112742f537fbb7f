"""SourceMonitor protocol for background health supervisors."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class SourceMonitor(Protocol):
    """Background monitor reporting replication lag and health."""

    async def start(self) -> None:
        """Start background monitoring tasks."""
        ...

    async def stop(self) -> None:
        """Stop background monitoring tasks."""
        ...

    async def get_lag(self) -> list[dict[str, Any]]:
        """Return current replication lag information."""
        ...

"""Health probes for relay components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from cdc_relay.config.models import RelayConfig
from cdc_relay.sources.wal.slot_manager import SlotManager
from cdc_relay.store.base import DataStore

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class RelayHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


async def check_database(store: DataStore, name: str = "source") -> ComponentHealth:
    """Probe database connectivity and report the server version."""
    try:
        version = await store.fetchval("SHOW server_version")
        return ComponentHealth(
            name=name, status=Status.HEALTHY, detail=f"PostgreSQL {version}"
        )
    except Exception as exc:
        return ComponentHealth(name=name, status=Status.UNHEALTHY, detail=str(exc))


async def check_logical_replication(store: DataStore) -> ComponentHealth:
    """Verify the server allows logical decoding."""
    try:
        wal_level = await store.fetchval("SHOW wal_level")
        if wal_level != "logical":
            return ComponentHealth(
                name="wal-level",
                status=Status.UNHEALTHY,
                detail=f"wal_level={wal_level} (needs logical)",
            )
        return ComponentHealth(
            name="wal-level", status=Status.HEALTHY, detail="wal_level=logical"
        )
    except Exception as exc:
        return ComponentHealth(
            name="wal-level", status=Status.UNHEALTHY, detail=str(exc)
        )


async def check_slot(slots: SlotManager) -> ComponentHealth:
    """Report whether the replication slot exists and is streaming."""
    result = await slots.get_slot_status()
    if not result.success:
        return ComponentHealth(
            name="replication-slot", status=Status.UNHEALTHY, detail=result.message
        )
    active = result.details.get("is_active")
    lag = result.details.get("lag_bytes")
    return ComponentHealth(
        name="replication-slot",
        status=Status.HEALTHY,
        detail=f"{slots.slot_name} active={active} lag_bytes={lag}",
    )


async def check_relay_health(
    config: RelayConfig,
    source: DataStore,
    target: DataStore | None = None,
) -> RelayHealth:
    """Run all health checks and return the aggregated result."""
    components = [await check_database(source, "source")]
    if target is not None:
        components.append(await check_database(target, "target"))

    if config.replication.enabled:
        components.append(await check_logical_replication(source))
        slots = SlotManager(
            source,
            config.replication.slot_name,
            config.replication.publication_name,
        )
        components.append(await check_slot(slots))

    return RelayHealth(components=components)

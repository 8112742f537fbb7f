"""Replication slot health monitor.

Periodically inspects the configured slot, estimates lag in milliseconds
and, when the slot is inactive, works out whether it is merely waiting for
its consumer to reconnect or the server is misconfigured for logical
replication.  Each check publishes a new immutable snapshot.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime
from typing import Any

import structlog

from cdc_relay.config.models import HealthMonitorConfig
from cdc_relay.sources.wal.models import (
    DiagnosisVerdict,
    ReplicationHealthStatus,
    ReplicationSlotStatus,
    SlotDiagnosis,
    lsn_is_valid,
    utcnow,
)
from cdc_relay.sources.wal.slot_manager import SlotManager
from cdc_relay.store.base import DataStore

logger = structlog.get_logger()

_WALSENDER_SQL = (
    "SELECT count(*) AS walsenders FROM pg_stat_activity "
    "WHERE backend_type = 'walsender'"
)
_SETTINGS_SQL = (
    "SELECT name, setting FROM pg_settings "
    "WHERE name IN ('wal_level', 'max_wal_senders', 'max_replication_slots')"
)


def lag_bytes_to_ms(lag_bytes: int, throughput_bytes_per_second: float) -> float:
    return lag_bytes * 1000.0 / throughput_bytes_per_second


class ReplicationHealthMonitor:
    """Periodic health checks for one logical replication slot."""

    def __init__(
        self,
        slots: SlotManager,
        store: DataStore,
        config: HealthMonitorConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._slots = slots
        self._store = store
        self._config = config
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._latest: ReplicationHealthStatus | None = None

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("health_monitor.already_running", slot=self._slots.slot_name)
            return
        self._task = asyncio.create_task(self._check_loop())
        logger.info(
            "health_monitor.started",
            slot=self._slots.slot_name,
            interval=self._config.interval_seconds,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _check_loop(self) -> None:
        while True:
            status = await self.check()
            if status.is_healthy:
                logger.info("health_monitor.healthy", lag_ms=round(status.lag_ms, 1))
            else:
                logger.warning(
                    "health_monitor.unhealthy",
                    issues=list(status.issues),
                    lag_ms=round(status.lag_ms, 1),
                )
            await asyncio.sleep(self._config.interval_seconds)

    @property
    def latest(self) -> ReplicationHealthStatus | None:
        return self._latest

    async def get_health_status(self) -> ReplicationHealthStatus:
        """Latest snapshot, running a check first if none exists yet."""
        if self._latest is None:
            return await self.check()
        return self._latest

    async def get_lag(self) -> list[dict[str, Any]]:
        status = await self.get_health_status()
        slot = status.slot_status
        return [
            {
                "slot_name": self._slots.slot_name,
                "lag_bytes": slot.lag_bytes if slot else None,
                "lag_ms": status.lag_ms,
            }
        ]

    async def check(self) -> ReplicationHealthStatus:
        """Run one health check.  Never raises."""
        issues: list[str] = []
        slot: ReplicationSlotStatus | None = None
        diagnosis: SlotDiagnosis | None = None
        lag_ms = 0.0

        try:
            await self._store.fetchval("SELECT 1")
        except Exception as exc:
            issues.append(f"Database connectivity check failed: {exc}")
            return self._publish(issues, slot, lag_ms, diagnosis)

        try:
            slot = await self._slots.get_slot()
            if slot is None:
                issues.append(
                    f"Replication slot {self._slots.slot_name} does not exist"
                )
            else:
                if not slot.is_active:
                    issues.append(f"Replication slot {slot.slot_name} is inactive")
                    diagnosis = await self.diagnose(slot)
                    if diagnosis.verdict == DiagnosisVerdict.MISCONFIGURED:
                        issues.extend(diagnosis.reasons)

                lag_ms = lag_bytes_to_ms(
                    slot.lag_bytes, self._config.throughput_bytes_per_second
                )
                if lag_ms > self._config.lag_threshold_ms:
                    issues.append(
                        f"Replication lag {lag_ms:.0f}ms exceeds threshold "
                        f"{self._config.lag_threshold_ms:.0f}ms"
                    )
                if not lsn_is_valid(slot.restart_lsn):
                    issues.append(
                        f"Replication slot {slot.slot_name} has no valid restart LSN"
                    )
        except Exception as exc:
            logger.error("health_monitor.check_failed", error=str(exc), exc_info=True)
            issues.append(f"Health check failed: {exc}")

        return self._publish(issues, slot, lag_ms, diagnosis)

    async def diagnose(self, slot: ReplicationSlotStatus) -> SlotDiagnosis:
        """Explain why *slot* is inactive."""
        walsenders = int(await self._store.fetchval(_WALSENDER_SQL) or 0)
        rows = await self._store.fetch(_SETTINGS_SQL)
        settings = {str(r["name"]): str(r["setting"]) for r in rows}

        reasons: list[str] = []
        wal_level = settings.get("wal_level")
        if wal_level is not None and wal_level != "logical":
            reasons.append(
                f"wal_level is '{wal_level}'; logical replication requires 'logical'"
            )
        for name in ("max_wal_senders", "max_replication_slots"):
            value = settings.get(name)
            if value is not None and value.isdigit() and int(value) == 0:
                reasons.append(f"{name} is 0; logical replication is disabled")

        verdict = (
            DiagnosisVerdict.MISCONFIGURED
            if reasons
            else DiagnosisVerdict.AWAITING_RECONNECT
        )
        logger.info(
            "health_monitor.slot_diagnosed",
            slot=slot.slot_name,
            verdict=verdict.value,
            holder_pid=slot.active_pid,
            walsenders=walsenders,
            wal_status=slot.wal_status,
            reasons=reasons,
        )
        return SlotDiagnosis(
            verdict=verdict,
            reasons=tuple(reasons),
            holder_pid=slot.active_pid,
            walsenders=walsenders,
            settings=settings,
        )

    def _publish(
        self,
        issues: list[str],
        slot: ReplicationSlotStatus | None,
        lag_ms: float,
        diagnosis: SlotDiagnosis | None,
    ) -> ReplicationHealthStatus:
        status = ReplicationHealthStatus(
            is_healthy=not issues,
            slot_status=slot,
            lag_ms=lag_ms,
            issues=tuple(issues),
            last_checked=self._clock(),
            diagnosis=diagnosis,
            metrics={
                "slot_name": self._slots.slot_name,
                "publication_name": self._slots.publication_name,
                "lag_threshold_ms": self._config.lag_threshold_ms,
            },
        )
        self._latest = status
        return status

"""Replication slot and publication lifecycle management."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from cdc_relay.sources.wal.models import AdminResult, ReplicationSlotStatus
from cdc_relay.store.base import DataStore, quote_ident

logger = structlog.get_logger()

SleepFn = Callable[[float], Awaitable[None]]

SLOT_STATUS_SQL = (
    "SELECT slot_name, plugin, slot_type, database, temporary, active, "
    "active_pid, wal_status, "
    "restart_lsn::text AS restart_lsn, "
    "confirmed_flush_lsn::text AS confirmed_flush_lsn, "
    "COALESCE(pg_wal_lsn_diff(pg_current_wal_lsn(), confirmed_flush_lsn), 0)"
    "::bigint AS lag_bytes "
    "FROM pg_replication_slots WHERE slot_name = %s"
)

_PRIVILEGE_SQL = (
    "SELECT 1 FROM pg_roles "
    "WHERE rolname = current_user AND (rolreplication OR rolsuper)"
)


class SlotManager:
    """Manages PostgreSQL replication slots and publications.

    All statements go through an autocommit :class:`DataStore` on the
    source database.  Administrative methods return :class:`AdminResult`
    and never raise for expected failures.
    """

    def __init__(
        self,
        store: DataStore,
        slot_name: str = "order_events_slot",
        publication_name: str = "cdc_publication",
        *,
        output_plugin: str = "pgoutput",
        cleanup_wait_seconds: float = 2.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._store = store
        self._slot_name = slot_name
        self._publication_name = publication_name
        self._output_plugin = output_plugin
        self._cleanup_wait_seconds = cleanup_wait_seconds
        self._sleep = sleep

    @property
    def slot_name(self) -> str:
        return self._slot_name

    @property
    def publication_name(self) -> str:
        return self._publication_name

    async def has_replication_privilege(self) -> bool:
        return await self._store.fetchrow(_PRIVILEGE_SQL) is not None

    async def get_slot(
        self, slot_name: str | None = None
    ) -> ReplicationSlotStatus | None:
        row = await self._store.fetchrow(
            SLOT_STATUS_SQL, (slot_name or self._slot_name,)
        )
        return ReplicationSlotStatus.from_row(row) if row is not None else None

    async def publication_exists(self, name: str | None = None) -> bool:
        row = await self._store.fetchrow(
            "SELECT 1 FROM pg_publication WHERE pubname = %s",
            (name or self._publication_name,),
        )
        return row is not None

    async def ensure_publication(self, tables: list[str]) -> bool:
        """Create the publication if it doesn't exist; True when created.

        Args:
            tables: Schema-qualified table names (e.g. ["public.orders"]).
        """
        if await self.publication_exists():
            logger.info("wal.publication_exists", name=self._publication_name)
            return False

        table_list = ", ".join(
            ".".join(quote_ident(part) for part in t.split(".", 1)) for t in tables
        )
        target = f"FOR TABLE {table_list}" if tables else "FOR ALL TABLES"
        await self._store.execute(
            f"CREATE PUBLICATION {quote_ident(self._publication_name)} {target}"
        )
        logger.info(
            "wal.publication_created", name=self._publication_name, tables=tables
        )
        return True

    async def create_slot(self, slot_name: str | None = None) -> None:
        name = slot_name or self._slot_name
        await self._store.execute(
            "SELECT pg_create_logical_replication_slot(%s, %s)",
            (name, self._output_plugin),
        )
        logger.info("wal.slot_created", name=name, plugin=self._output_plugin)

    async def ensure_slot(self) -> bool:
        """Create the replication slot if it doesn't exist; True when created."""
        if await self.get_slot() is not None:
            logger.info("wal.slot_exists", name=self._slot_name)
            return False
        await self.create_slot()
        return True

    async def drop_slot(self, slot_name: str | None = None) -> None:
        name = slot_name or self._slot_name
        await self._store.execute("SELECT pg_drop_replication_slot(%s)", (name,))
        logger.info("wal.slot_dropped", name=name)

    # -- administrative operations --------------------------------------------

    async def get_slot_status(self, slot_name: str | None = None) -> AdminResult:
        name = slot_name or self._slot_name
        try:
            slot = await self.get_slot(name)
        except Exception as exc:
            logger.error("wal.slot_status_failed", name=name, error=str(exc))
            return AdminResult(False, f"Failed to read slot {name}: {exc}")
        if slot is None:
            return AdminResult(False, f"Replication slot {name} does not exist")
        return AdminResult(
            True, f"Replication slot {name} found", details=slot.to_dict()
        )

    async def reset_slot(self, slot_name: str | None = None) -> AdminResult:
        """Drop and recreate an inactive slot; create it when missing.

        An active slot is never touched.
        """
        name = slot_name or self._slot_name
        try:
            slot = await self.get_slot(name)
            if slot is not None and slot.is_active:
                logger.warning(
                    "wal.slot_reset_refused", name=name, pid=slot.active_pid
                )
                return AdminResult(
                    False,
                    f"Replication slot {name} is active; stop its consumer first",
                    details={"active_pid": slot.active_pid},
                )
            if slot is not None:
                await self.drop_slot(name)
            await self.create_slot(name)
        except Exception as exc:
            logger.error("wal.slot_reset_failed", name=name, error=str(exc))
            return AdminResult(False, f"Failed to reset slot {name}: {exc}")
        logger.info("wal.slot_reset", name=name, existed=slot is not None)
        return AdminResult(True, f"Replication slot {name} reset")

    async def force_cleanup_slot(self, slot_name: str | None = None) -> AdminResult:
        """Terminate backends holding the slot, then drop and recreate it."""
        name = slot_name or self._slot_name
        terminated: list[int] = []
        try:
            slot = await self.get_slot(name)
            if slot is not None and slot.active_pid is not None:
                await self._store.execute(
                    "SELECT pg_terminate_backend(%s)", (slot.active_pid,)
                )
                terminated.append(slot.active_pid)
                logger.warning(
                    "wal.slot_holder_terminated", name=name, pid=slot.active_pid
                )
                await self._sleep(self._cleanup_wait_seconds)
            if slot is not None:
                await self.drop_slot(name)
            await self.create_slot(name)
        except Exception as exc:
            logger.error("wal.slot_cleanup_failed", name=name, error=str(exc))
            return AdminResult(
                False,
                f"Failed to clean up slot {name}: {exc}",
                details={"terminated_pids": terminated},
            )
        return AdminResult(
            True,
            f"Replication slot {name} cleaned up",
            details={"terminated_pids": terminated},
        )

    async def create_publication_if_absent(
        self, name: str | None, tables: list[str]
    ) -> AdminResult:
        manager = self
        if name is not None and name != self._publication_name:
            manager = SlotManager(
                self._store,
                self._slot_name,
                name,
                output_plugin=self._output_plugin,
            )
        try:
            created = await manager.ensure_publication(tables)
        except Exception as exc:
            logger.error(
                "wal.publication_failed", name=manager.publication_name, error=str(exc)
            )
            return AdminResult(False, f"Failed to create publication: {exc}")
        verb = "created" if created else "already exists"
        return AdminResult(
            True,
            f"Publication {manager.publication_name} {verb}",
            details={"created": created, "tables": tables},
        )

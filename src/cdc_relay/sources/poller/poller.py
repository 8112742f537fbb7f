"""Polling change source.

Detects row mutations by comparing created/updated timestamps against a
per-table watermark.  A watermark only advances after every event of the
cycle has been dispatched, so a failed cycle is re-read on the next tick.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Callable
from contextlib import suppress
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from cdc_relay.config.models import PollerConfig, TableConfig
from cdc_relay.events.model import ChangeEvent, Operation
from cdc_relay.events.registry import EventDispatchRegistry, HandlerFn
from cdc_relay.sources.base import CdcStatus, SourceState
from cdc_relay.sources.poller.queries import (
    BOOKKEEPING_COLUMNS,
    EVENT_TIME_COLUMN,
    OPERATION_COLUMN,
    SLOT_INFO_SQL,
    XID_COLUMN,
    build_change_query,
    table_name_variants,
)
from cdc_relay.store.base import DataStore

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _as_utc(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        msg = f"Expected a timestamp for the change time, got {type(value).__name__}"
        raise TypeError(msg)
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class RowSnapshotCache:
    """Bounded LRU of the last row image seen per primary key."""

    def __init__(self, max_size: int) -> None:
        self._max_size = max_size
        self._rows: OrderedDict[Any, dict[str, Any]] = OrderedDict()

    def get(self, key: Any) -> dict[str, Any] | None:
        row = self._rows.get(key)
        if row is not None:
            self._rows.move_to_end(key)
        return row

    def put(self, key: Any, row: dict[str, Any]) -> None:
        if self._max_size <= 0 or key is None:
            return
        self._rows[key] = row
        self._rows.move_to_end(key)
        while len(self._rows) > self._max_size:
            self._rows.popitem(last=False)

    def __len__(self) -> int:
        return len(self._rows)


class ChangePoller:
    """Polls configured tables and dispatches the changes it finds.

    Lifecycle: STOPPED -> INITIALIZING -> ACTIVE -> STOPPED.  The state lock
    guards transitions only and is never held while polling.
    """

    def __init__(
        self,
        store: DataStore,
        registry: EventDispatchRegistry,
        tables: list[TableConfig],
        config: PollerConfig,
        *,
        slot_name: str | None = None,
        owns_store: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._tables = list(tables)
        self._config = config
        self._slot_name = slot_name
        self._owns_store = owns_store
        self._clock = clock

        self._state = SourceState.STOPPED
        self._state_lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None
        self._status_task: asyncio.Task[None] | None = None

        self._watermarks: dict[str, datetime] = {}
        self._caches: dict[str, RowSnapshotCache] = {}
        self._start_time: datetime | None = None
        self._last_activity: datetime | None = None
        self._events_processed = 0
        self._error_count = 0
        self._last_error: str | None = None
        self._slot_info: dict[str, Any] = {}

    # -- lifecycle -------------------------------------------------------------

    @property
    def state(self) -> SourceState:
        return self._state

    async def start(self) -> None:
        async with self._state_lock:
            if self._state != SourceState.STOPPED:
                logger.warning("poller.already_started", state=self._state.value)
                return
            self._state = SourceState.INITIALIZING

        try:
            await self._initialize()
        except Exception as exc:
            async with self._state_lock:
                self._state = SourceState.STOPPED
            self._record_error(str(exc))
            logger.error("poller.initialize_failed", error=str(exc), exc_info=True)
            raise

        async with self._state_lock:
            if self._state != SourceState.INITIALIZING:
                # stop() ran while initializing.
                logger.info("poller.start_aborted", state=self._state.value)
                return
            self._state = SourceState.ACTIVE
            self._start_time = self._clock()
            self._poll_task = asyncio.create_task(self._poll_loop())
            self._status_task = asyncio.create_task(self._status_loop())
        logger.info(
            "poller.started",
            tables=[t.qualified_name for t in self._tables],
            interval=self._config.interval_seconds,
        )

    async def stop(self) -> None:
        async with self._state_lock:
            if self._state == SourceState.STOPPED:
                return
            self._state = SourceState.STOPPED
            tasks = [t for t in (self._poll_task, self._status_task) if t is not None]
            self._poll_task = None
            self._status_task = None

        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        if self._owns_store:
            await self._store.close()
        logger.info("poller.stopped", events_processed=self._events_processed)

    async def _initialize(self) -> None:
        await self._store.fetchval("SELECT 1")
        seed = self._clock() - timedelta(seconds=self._config.initial_lookback_seconds)
        for table in self._tables:
            self._watermarks.setdefault(table.qualified_name, seed)
            self._caches.setdefault(
                table.qualified_name,
                RowSnapshotCache(self._config.snapshot_cache_size),
            )

    # -- subscriptions ---------------------------------------------------------

    def subscribe(self, table_name: str, handler: HandlerFn) -> None:
        self._registry.subscribe(table_name, handler)

    def unsubscribe(self, table_name: str) -> None:
        self._registry.unsubscribe(table_name)

    # -- status ----------------------------------------------------------------

    def get_status(self) -> CdcStatus:
        return CdcStatus(
            state=self._state,
            start_time=self._start_time,
            last_activity=self._last_activity,
            events_processed=self._events_processed,
            error_count=self._error_count,
            last_error=self._last_error,
            subscriptions=self._registry.subscriptions(),
            slot_info=dict(self._slot_info),
            watermarks=dict(self._watermarks),
        )

    def watermark(self, table: TableConfig) -> datetime | None:
        return self._watermarks.get(table.qualified_name)

    def _record_error(self, message: str) -> None:
        self._error_count += 1
        self._last_error = message

    # -- loops -----------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._config.interval_seconds)

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.status_interval_seconds)
            await self.refresh_slot_info()
            logger.info(
                "poller.status",
                state=self._state.value,
                events_processed=self._events_processed,
                error_count=self._error_count,
                slots=len(self._slot_info),
            )

    async def refresh_slot_info(self) -> None:
        """Read replication slot bookkeeping into the status snapshot."""
        try:
            if self._slot_name is not None:
                rows = await self._store.fetch(
                    f"{SLOT_INFO_SQL} WHERE slot_name = %s", (self._slot_name,)
                )
            else:
                rows = await self._store.fetch(SLOT_INFO_SQL)
        except Exception as exc:
            logger.warning("poller.slot_info_failed", error=str(exc))
            return
        self._slot_info = {str(r["slot_name"]): dict(r) for r in rows}

    async def poll_once(self) -> int:
        """Run one polling cycle over every table; returns events dispatched."""
        if not self._watermarks:
            await self._initialize()
        total = 0
        for table in self._tables:
            try:
                total += await self._poll_table(table)
            except Exception as exc:
                self._record_error(f"{table.qualified_name}: {exc}")
                logger.error(
                    "poller.table_failed",
                    table=table.qualified_name,
                    error=str(exc),
                    exc_info=True,
                )
        return total

    # -- per table -------------------------------------------------------------

    async def resolve_table(self, table: TableConfig) -> str | None:
        """Find the physical spelling of *table*'s name, or None."""
        for candidate in table_name_variants(table.name):
            if await self._store.table_exists(table.schema_name, candidate):
                return candidate
        return None

    async def _poll_table(self, table: TableConfig) -> int:
        physical = await self.resolve_table(table)
        if physical is None:
            logger.debug("poller.table_missing", table=table.qualified_name)
            return 0

        key = table.qualified_name
        watermark = self._watermarks[key]
        query = build_change_query(table, physical)
        rows = await self._store.fetch(query.sql, query.params(watermark))
        if not rows:
            return 0

        cache = self._caches[key]
        events: list[ChangeEvent] = []
        latest: dict[Any, dict[str, Any]] = {}
        for raw in rows:
            event, data = self._to_event(table, physical, raw, cache, latest)
            events.append(event)
            latest[data.get(table.primary_key)] = data

        # Stable sort keeps query order for equal timestamps.
        events.sort(key=lambda e: e.event_time)
        for event in events:
            await self._registry.dispatch(event)

        self._watermarks[key] = max(watermark, max(e.event_time for e in events))
        for pk, data in latest.items():
            cache.put(pk, data)
        self._events_processed += len(events)
        self._last_activity = self._clock()
        logger.info(
            "poller.changes_dispatched",
            table=key,
            count=len(events),
            watermark=self._watermarks[key].isoformat(),
        )
        return len(events)

    def _to_event(
        self,
        table: TableConfig,
        physical: str,
        raw: dict[str, Any],
        cache: RowSnapshotCache,
        pending: dict[Any, dict[str, Any]],
    ) -> tuple[ChangeEvent, dict[str, Any]]:
        operation = Operation.parse(str(raw[OPERATION_COLUMN]))
        data = {k: v for k, v in raw.items() if k not in BOOKKEEPING_COLUMNS}
        pk = data.get(table.primary_key)

        before = None
        if operation == Operation.UPDATE:
            before = pending.get(pk) or cache.get(pk)

        event = ChangeEvent.build(
            operation,
            table.schema_name,
            physical,
            before=before,
            after=data,
            event_time=_as_utc(raw[EVENT_TIME_COLUMN]),
            transaction_id=str(raw.get(XID_COLUMN)) if raw.get(XID_COLUMN) else None,
            metadata={"source": "poller"},
        )
        # Cache the formatted image so the next before-image compares like for like.
        return event, dict(event.after or {})

"""Batch event processor.

Validates and routes change events per table, processing batches in
transactional chunks.  A chunk that fails as a whole is replayed event by
event so one malformed record costs one failure instead of the chunk.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass

import structlog

from cdc_relay.config.models import ProcessorConfig
from cdc_relay.errors import InvalidEventError
from cdc_relay.events.model import ChangeEvent
from cdc_relay.events.registry import EventDispatchRegistry
from cdc_relay.processing.dead_letter import DeadLetterWriter
from cdc_relay.processing.stats import EventProcessingStats
from cdc_relay.store.base import DataStore

logger = structlog.get_logger()

RouteFn = Callable[[ChangeEvent, DataStore], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class BatchResult:
    succeeded: int
    failed: int
    degraded_chunks: int = 0


async def process_order_event(event: ChangeEvent, tx: DataStore) -> None:
    order_id = event.primary_key("id")
    if order_id is None:
        msg = f"Order change on {event.table_name} carries no id"
        raise InvalidEventError(msg)
    logger.info(
        "processor.order_event",
        order_id=order_id,
        operation=event.operation.value,
        status=event.row.get("status"),
    )


async def process_outbox_event(event: ChangeEvent, tx: DataStore) -> None:
    row = event.row
    if row.get("id") is None or not row.get("event_type"):
        msg = f"Outbox change on {event.table_name} lacks id or event_type"
        raise InvalidEventError(msg)
    logger.info(
        "processor.outbox_event",
        id=row.get("id"),
        event_type=row.get("event_type"),
        aggregate_type=row.get("aggregate_type"),
        aggregate_id=row.get("aggregate_id"),
    )


async def process_default_event(event: ChangeEvent, tx: DataStore) -> None:
    logger.debug(
        "processor.event",
        table=event.table_name,
        operation=event.operation.value,
    )


def _chunks(
    events: Sequence[ChangeEvent], size: int
) -> Iterable[Sequence[ChangeEvent]]:
    for start in range(0, len(events), size):
        yield events[start : start + size]


class BatchEventProcessor:
    """Processes change events singly or in transactional chunks."""

    def __init__(
        self,
        store: DataStore,
        config: ProcessorConfig,
        *,
        order_tables: Iterable[str] = ("orders",),
        outbox_tables: Iterable[str] = ("outbox_events",),
        registry: EventDispatchRegistry | None = None,
        dead_letter: DeadLetterWriter | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._allowed = frozenset(t.lower() for t in config.allowed_tables)
        self._routes: dict[str, RouteFn] = {}
        for table in order_tables:
            self._routes[table.lower()] = process_order_event
        for table in outbox_tables:
            self._routes[table.lower()] = process_outbox_event
        self._registry = registry if config.forward_to_registry else None
        self._dead_letter = dead_letter
        self._gate = asyncio.Lock()
        self._stats = EventProcessingStats()
        self._stats_lock = asyncio.Lock()

    def register_route(self, table_name: str, route: RouteFn) -> None:
        self._routes[table_name.lower()] = route

    async def get_stats(self) -> EventProcessingStats:
        async with self._stats_lock:
            return self._stats.copy()

    # -- validation and routing ------------------------------------------------

    def validate(self, event: ChangeEvent) -> None:
        if not event.table_name or not event.operation:
            msg = "Change event has no table or operation"
            raise InvalidEventError(msg)
        if event.before is None and event.after is None:
            msg = f"Change event on {event.table_name} carries no row data"
            raise InvalidEventError(msg)
        if event.table_name.lower() not in self._allowed:
            msg = f"Table {event.table_name} is not in the processing allow-list"
            raise InvalidEventError(msg)

    async def _handle(self, event: ChangeEvent, tx: DataStore) -> None:
        self.validate(event)
        route = self._routes.get(event.table_name.lower(), process_default_event)
        await route(event, tx)

    async def _forward(self, events: Sequence[ChangeEvent]) -> None:
        # Runs after commit so a replayed chunk never dispatches twice.
        if self._registry is None:
            return
        for event in events:
            await self._registry.dispatch(event)

    async def _record(self, event: ChangeEvent, started: float, success: bool) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        async with self._stats_lock:
            self._stats.record(event, elapsed_ms, success=success)

    async def _fail(self, event: ChangeEvent, exc: Exception, started: float) -> None:
        logger.error(
            "processor.event_failed",
            table=event.table_name,
            operation=event.operation.value,
            position=event.position,
            error=str(exc),
        )
        await self._record(event, started, success=False)
        if self._dead_letter is not None:
            await self._dead_letter.write(event, exc)

    # -- single events ---------------------------------------------------------

    async def process_event(self, event: ChangeEvent) -> bool:
        """Process one event behind the in-flight gate.

        Returns False when the event failed or was dropped because the gate
        could not be acquired within the configured timeout.
        """
        try:
            await asyncio.wait_for(
                self._gate.acquire(), timeout=self._config.timeout_seconds
            )
        except TimeoutError:
            async with self._stats_lock:
                self._stats.dropped_events += 1
            logger.warning(
                "processor.event_dropped",
                table=event.table_name,
                operation=event.operation.value,
                timeout=self._config.timeout_seconds,
            )
            return False

        try:
            return await self._process_single(event)
        finally:
            self._gate.release()

    async def _process_single(self, event: ChangeEvent) -> bool:
        started = time.perf_counter()
        try:
            async with self._store.transaction() as tx:
                await self._handle(event, tx)
        except Exception as exc:
            await self._fail(event, exc, started)
            return False
        await self._record(event, started, success=True)
        await self._forward((event,))
        return True

    # -- batches ---------------------------------------------------------------

    async def process_batch(self, events: Sequence[ChangeEvent]) -> BatchResult:
        succeeded = failed = degraded = 0
        for chunk in _chunks(list(events), self._config.batch_size):
            started = time.perf_counter()
            try:
                async with self._store.transaction() as tx:
                    for event in chunk:
                        await self._handle(event, tx)
            except Exception as exc:
                degraded += 1
                logger.warning(
                    "processor.chunk_failed",
                    size=len(chunk),
                    error=str(exc),
                    fallback="individual",
                )
                for event in chunk:
                    if await self._process_single(event):
                        succeeded += 1
                    else:
                        failed += 1
                continue

            elapsed_ms = (time.perf_counter() - started) * 1000.0
            per_event_ms = elapsed_ms / len(chunk)
            async with self._stats_lock:
                for event in chunk:
                    self._stats.record(event, per_event_ms, success=True)
            succeeded += len(chunk)
            await self._forward(chunk)

        logger.info(
            "processor.batch_processed",
            total=len(events),
            succeeded=succeeded,
            failed=failed,
            degraded_chunks=degraded,
        )
        return BatchResult(succeeded=succeeded, failed=failed, degraded_chunks=degraded)

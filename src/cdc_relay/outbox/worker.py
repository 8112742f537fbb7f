"""Outbox drain worker.

Periodically reads unprocessed outbox rows in creation order, hands each to
an optional publish callback and then marks it processed.  Marking happens
only after the callback returns, so a crash between the two re-delivers the
entry on the next tick (at-least-once).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from cdc_relay.config.models import OutboxConfig
from cdc_relay.outbox.models import OutboxEntry
from cdc_relay.outbox.store import OutboxStore, describe_entry

logger = structlog.get_logger()

PublishCallback = Callable[[OutboxEntry], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class OutboxWorkerStatus:
    is_running: bool
    processed_count: int
    failed_count: int
    fallback_updates: int
    last_run: datetime | None
    last_error: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "running" if self.is_running else "stopped",
            "processed": self.processed_count,
            "failed": self.failed_count,
            "fallback_updates": self.fallback_updates,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
        }


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class OutboxDrainWorker:
    """Drains the outbox table on a fixed interval."""

    def __init__(
        self,
        outbox: OutboxStore,
        config: OutboxConfig,
        publish: PublishCallback | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._outbox = outbox
        self._config = config
        self._publish = publish
        self._sleep = sleep
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._processed = 0
        self._failed = 0
        self._fallbacks = 0
        self._last_run: datetime | None = None
        self._last_error: str | None = None

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("outbox.already_running")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "outbox.worker_started",
            table=self._config.qualified_name,
            interval=self._config.interval_seconds,
            batch_size=self._config.batch_size,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("outbox.worker_stopped", processed=self._processed)

    def get_status(self) -> OutboxWorkerStatus:
        return OutboxWorkerStatus(
            is_running=self._task is not None and not self._task.done(),
            processed_count=self._processed,
            failed_count=self._failed,
            fallback_updates=self._fallbacks,
            last_run=self._last_run,
            last_error=self._last_error,
        )

    async def _run_loop(self) -> None:
        while True:
            delay = self._config.interval_seconds
            try:
                await self.drain_once()
            except Exception as exc:
                # Fetch failed: the store itself is unavailable.
                self._last_error = str(exc)
                delay = self._config.interval_seconds * (
                    self._config.error_backoff_multiplier
                )
                logger.error(
                    "outbox.drain_failed", error=str(exc), retry_in=delay, exc_info=True
                )
            await self._sleep(delay)

    async def drain_once(self) -> int:
        """Process one batch and return how many entries were marked processed."""
        entries = await self._outbox.fetch_unprocessed(self._config.batch_size)
        self._last_run = self._clock()
        if not entries:
            return 0

        logger.debug("outbox.batch_fetched", count=len(entries))
        marked = 0
        for entry in entries:
            if await self._process_entry(entry):
                marked += 1
        return marked

    async def _process_entry(self, entry: OutboxEntry) -> bool:
        loaded_retry_count = entry.retry_count
        logger.info("outbox.processing_entry", **describe_entry(entry))
        try:
            if self._publish is not None:
                await self._publish(entry)

            entry.processed = True
            entry.processed_at = self._clock()
            updated = await self._outbox.mark_processed_tracked(
                entry.id, entry.processed_at, loaded_retry_count
            )
            if updated == 0:
                self._fallbacks += 1
                logger.warning("outbox.tracked_update_missed", id=entry.id)
                updated = await self._outbox.mark_processed_direct(
                    entry.id, entry.processed_at
                )
                if updated == 0:
                    logger.info("outbox.already_processed", id=entry.id)
        except Exception as exc:
            self._failed += 1
            self._last_error = str(exc)
            logger.error(
                "outbox.entry_failed",
                id=entry.id,
                event_type=entry.event_type,
                error=str(exc),
                exc_info=True,
            )
            await self._restore(entry)
            return False

        self._processed += 1
        return True

    async def _restore(self, entry: OutboxEntry) -> None:
        """Undo local mutation from the persisted row and count the retry."""
        try:
            persisted = await self._outbox.reload(entry.id)
            if persisted is not None:
                entry.processed = persisted.processed
                entry.processed_at = persisted.processed_at
                entry.retry_count = persisted.retry_count
            await self._outbox.increment_retry(entry.id)
        except Exception as exc:
            logger.warning("outbox.restore_failed", id=entry.id, error=str(exc))

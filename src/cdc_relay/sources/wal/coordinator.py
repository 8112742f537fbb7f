"""Logical replication coordinator.

Provisions the publication, slot and subscription, then supervises them
with a heartbeat.  Provisioning is retried with exponential backoff up to a
fixed attempt ceiling.  Heartbeat failures count against the same ceiling
and back off the same way before provisioning again.  Once the ceiling is
hit the coordinator stops and reports the last error.  The consecutive
error count resets only after a successful heartbeat.

States::

    IDLE -> PROVISIONING -> MONITORING
                 ^   |           |
                 |   v           | heartbeat failure
               ERROR(n) <--------+
                 |
                 v  (n == max_attempts)
              STOPPED
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from datetime import datetime
from typing import Any

import structlog
from tenacity import AsyncRetrying, RetryCallState

from cdc_relay.config.models import ReplicationConfig
from cdc_relay.errors import ReplicationError
from cdc_relay.sources.wal.models import (
    CoordinatorState,
    CoordinatorStatus,
    utcnow,
)
from cdc_relay.sources.wal.monitor import ReplicationHealthMonitor
from cdc_relay.sources.wal.reader import BatchConsumer, SlotChangeReader
from cdc_relay.sources.wal.slot_manager import SlotManager
from cdc_relay.sources.wal.subscription import SubscriptionManager

logger = structlog.get_logger()

SleepFn = Callable[[float], Awaitable[None]]


class ReplicationCoordinator:
    """Keeps native logical replication objects provisioned and observed."""

    def __init__(
        self,
        slots: SlotManager,
        config: ReplicationConfig,
        *,
        tables: list[str],
        subscriptions: SubscriptionManager | None = None,
        monitor: ReplicationHealthMonitor | None = None,
        reader: SlotChangeReader | None = None,
        consumer: BatchConsumer | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._slots = slots
        self._config = config
        self._tables = list(tables)
        self._subscriptions = subscriptions
        self._monitor = monitor
        self._reader = reader
        self._consumer = consumer
        self._sleep = sleep
        self._clock = clock

        self._task: asyncio.Task[None] | None = None
        self._state = CoordinatorState.IDLE
        self._start_time: datetime | None = None
        self._messages_replicated = 0
        self._error_count = 0
        self._consecutive_errors = 0
        self._last_error: str | None = None
        self._subscription_state: dict[str, Any] | None = None
        self._lag_bytes: int | None = None

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("coordinator.already_running", state=self._state.value)
            return
        self._start_time = self._clock()
        self._task = asyncio.create_task(self._run())
        logger.info(
            "coordinator.started",
            slot=self._slots.slot_name,
            publication=self._slots.publication_name,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._state = CoordinatorState.STOPPED
        logger.info("coordinator.stopped", messages=self._messages_replicated)

    async def wait(self) -> None:
        """Block until the supervision task ends (circuit open or stopped)."""
        if self._task is not None:
            with suppress(asyncio.CancelledError):
                await self._task

    def get_status(self) -> CoordinatorStatus:
        return CoordinatorStatus(
            state=self._state,
            is_running=self._task is not None and not self._task.done(),
            start_time=self._start_time,
            messages_replicated=self._messages_replicated,
            error_count=self._error_count,
            consecutive_errors=self._consecutive_errors,
            last_error=self._last_error,
            subscription_state=(
                dict(self._subscription_state) if self._subscription_state else None
            ),
            lag_bytes=self._lag_bytes,
        )

    # -- supervision -----------------------------------------------------------

    async def _run(self) -> None:
        while await self.run_provisioning():
            self._state = CoordinatorState.MONITORING
            try:
                while True:
                    await self.heartbeat()
                    self._consecutive_errors = 0
                    await self._sleep(self._config.heartbeat_interval_seconds)
            except Exception as exc:
                self._record_failure(exc)
                logger.error(
                    "coordinator.heartbeat_failed",
                    error=str(exc),
                    consecutive_errors=self._consecutive_errors,
                    exc_info=True,
                )

            if self._circuit_open():
                self._stop_circuit(self._last_error)
                return
            delay = self._backoff_delay()
            logger.warning(
                "coordinator.retry_scheduled",
                attempt=self._consecutive_errors,
                max_attempts=self._config.retry.max_attempts,
                delay=delay,
                error=self._last_error,
            )
            await self._sleep(delay)

    async def run_provisioning(self) -> bool:
        """Provision with backoff.  False means the attempt ceiling was hit.

        Failures already counted by earlier heartbeats use up the same budget.
        """
        retrying = AsyncRetrying(
            stop=lambda _state: self._circuit_open(),
            wait=lambda _state: self._backoff_delay(),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    self._state = CoordinatorState.PROVISIONING
                    try:
                        await self.provision()
                    except Exception as exc:
                        self._record_failure(exc)
                        raise
        except Exception as exc:
            self._stop_circuit(str(exc))
            return False

        logger.info("coordinator.provisioned", slot=self._slots.slot_name)
        return True

    def _record_failure(self, exc: Exception) -> None:
        self._consecutive_errors += 1
        self._error_count += 1
        self._last_error = str(exc)
        self._state = CoordinatorState.ERROR

    def _circuit_open(self) -> bool:
        return self._consecutive_errors >= self._config.retry.max_attempts

    def _backoff_delay(self) -> float:
        """``base * 2^(n-1)`` for n consecutive errors, capped at the maximum."""
        retry = self._config.retry
        exponent = max(self._consecutive_errors - 1, 0)
        return min(retry.base_delay_seconds * 2**exponent, retry.max_delay_seconds)

    def _stop_circuit(self, error: str | None) -> None:
        self._state = CoordinatorState.STOPPED
        logger.error(
            "coordinator.retries_exhausted",
            attempts=self._consecutive_errors,
            error=error,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "coordinator.retry_scheduled",
            attempt=self._consecutive_errors,
            max_attempts=self._config.retry.max_attempts,
            delay=delay,
            error=self._last_error,
        )

    async def provision(self) -> None:
        """One idempotent provisioning pass."""
        if not await self._slots.has_replication_privilege():
            logger.warning(
                "coordinator.missing_replication_privilege",
                hint="ALTER ROLE <user> WITH REPLICATION",
            )
        await self._slots.ensure_publication(self._tables)
        await self._ensure_slot()
        if self._subscriptions is not None and self._config.auto_create_subscription:
            await self._subscriptions.ensure_subscription()

    async def _ensure_slot(self) -> None:
        slot = await self._slots.get_slot()
        if slot is None:
            if not self._config.create_slot_if_missing:
                msg = f"Replication slot {self._slots.slot_name} does not exist"
                raise ReplicationError(msg)
            await self._slots.create_slot()
            return

        if slot.is_active:
            logger.info("coordinator.slot_active", slot=slot.slot_name)
            return

        if self._monitor is not None:
            await self._monitor.diagnose(slot)

        if slot.has_confirmed_position:
            logger.info(
                "coordinator.slot_inactive_kept",
                slot=slot.slot_name,
                confirmed_flush_lsn=slot.confirmed_flush_lsn,
            )
            return

        logger.warning("coordinator.slot_resetting", slot=slot.slot_name)
        result = await self._slots.reset_slot()
        if not result.success:
            raise ReplicationError(result.message)

    async def heartbeat(self) -> None:
        if self._subscriptions is not None:
            self._subscription_state = await self._subscriptions.get_state()
            self._lag_bytes = await self._subscriptions.get_lag_bytes()

        consumed = 0
        if (
            self._config.consume_slot_changes
            and self._reader is not None
            and self._consumer is not None
        ):
            consumed = await self._reader.read(self._consumer)
            self._messages_replicated += consumed

        logger.info(
            "coordinator.heartbeat",
            subscription_enabled=(
                self._subscription_state.get("enabled")
                if self._subscription_state
                else None
            ),
            lag_bytes=self._lag_bytes,
            consumed=consumed,
            messages_replicated=self._messages_replicated,
        )

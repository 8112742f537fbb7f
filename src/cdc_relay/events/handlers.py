"""Built-in change handlers.

``OrderChangeHandler`` turns order row changes into workflow steps,
``OutboxChangeHandler`` tracks outbox traffic and ``GenericChangeHandler``
is the catch-all audit logger that always runs last.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Iterable
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import structlog

from cdc_relay.events.model import ChangeEvent, Operation
from cdc_relay.events.registry import DEFAULT_PRIORITY

logger = structlog.get_logger()


class OrderStep(StrEnum):
    SEND_CONFIRMATION = "send_confirmation"
    UPDATE_INVENTORY = "update_inventory"
    NOTIFY_CUSTOMER = "notify_customer"
    RESERVE_INVENTORY = "reserve_inventory"
    PREPARE_SHIPMENT = "prepare_shipment"
    UPDATE_TRACKING = "update_tracking"
    COMPLETE_ORDER = "complete_order"
    SEND_SURVEY = "send_survey"
    RELEASE_INVENTORY = "release_inventory"
    PROCESS_REFUND = "process_refund"
    RECALCULATE_TOTALS = "recalculate_totals"
    RESTORE_INVENTORY = "restore_inventory"
    LOG_DELETION = "log_deletion"


_CREATED_STEPS = (
    OrderStep.SEND_CONFIRMATION,
    OrderStep.UPDATE_INVENTORY,
    OrderStep.NOTIFY_CUSTOMER,
)

_STATUS_STEPS: dict[str, tuple[OrderStep, ...]] = {
    "confirmed": (OrderStep.RESERVE_INVENTORY, OrderStep.PREPARE_SHIPMENT),
    "shipped": (OrderStep.UPDATE_TRACKING, OrderStep.NOTIFY_CUSTOMER),
    "delivered": (OrderStep.COMPLETE_ORDER, OrderStep.SEND_SURVEY),
    "cancelled": (OrderStep.RELEASE_INVENTORY, OrderStep.PROCESS_REFUND),
}

_DELETED_STEPS = (OrderStep.RESTORE_INVENTORY, OrderStep.LOG_DELETION)

_ORDER_EVENT_NAMES = {
    Operation.INSERT: "order.created",
    Operation.UPDATE: "order.updated",
    Operation.DELETE: "order.deleted",
}


@runtime_checkable
class OrderWorkflow(Protocol):
    """Executes one side-effect step for an order row."""

    async def run(self, step: OrderStep, order: dict[str, Any]) -> None: ...


class LoggingOrderWorkflow:
    """Default workflow: records each step without external side effects."""

    async def run(self, step: OrderStep, order: dict[str, Any]) -> None:
        logger.info("order.step", step=step.value, order_id=order.get("id"))


class OrderChangeHandler:
    """Maps order inserts, status transitions and deletes to workflow steps.

    Steps are fire-and-forget: each runs in its own task so a slow or
    failing step never delays dispatch.  :meth:`drain` waits for the steps
    still in flight (used on shutdown and in tests).
    """

    name = "order-changes"
    catch_all = False

    def __init__(
        self,
        workflow: OrderWorkflow | None = None,
        *,
        tables: Iterable[str] = ("orders",),
        status_column: str = "status",
        amount_column: str = "total_amount",
        priority: int = DEFAULT_PRIORITY,
    ) -> None:
        self._workflow = workflow or LoggingOrderWorkflow()
        self._tables = frozenset(t.lower() for t in tables)
        self._status_column = status_column
        self._amount_column = amount_column
        self.priority = priority
        self._pending: set[asyncio.Task[None]] = set()

    def can_handle(self, table_name: str) -> bool:
        return table_name.lower() in self._tables

    def plan(self, event: ChangeEvent) -> list[OrderStep]:
        """Return the workflow steps an event triggers, in execution order."""
        if event.operation == Operation.INSERT:
            return list(_CREATED_STEPS)
        if event.operation == Operation.DELETE:
            return list(_DELETED_STEPS)

        steps: list[OrderStep] = []
        if event.before is None:
            # No prior image: transitions cannot be told apart from no-ops.
            return steps
        if self._status_column in event.changed_columns:
            new_status = str(event.row.get(self._status_column) or "").lower()
            steps.extend(_STATUS_STEPS.get(new_status, ()))
        if self._amount_column in event.changed_columns:
            steps.append(OrderStep.RECALCULATE_TOTALS)
        return steps

    async def handle(self, event: ChangeEvent) -> None:
        steps = self.plan(event)
        order = dict(event.row)
        if event.operation == Operation.UPDATE and event.before is not None:
            logger.info(
                "order.changed",
                order_id=order.get("id"),
                changed=sorted(event.changed_columns),
                old_status=event.before.get(self._status_column),
                new_status=order.get(self._status_column),
            )
        else:
            logger.info(
                _ORDER_EVENT_NAMES[event.operation],
                order_id=order.get("id"),
                steps=[s.value for s in steps],
            )
        for step in steps:
            task = asyncio.create_task(self._run_step(step, order))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _run_step(self, step: OrderStep, order: dict[str, Any]) -> None:
        try:
            await self._workflow.run(step, order)
        except Exception as exc:
            logger.error(
                "order.step_failed",
                step=step.value,
                order_id=order.get("id"),
                error=str(exc),
                exc_info=True,
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))


class OutboxChangeHandler:
    """Observes rows written to outbox tables."""

    name = "outbox-changes"
    catch_all = False

    def __init__(
        self,
        *,
        tables: Iterable[str] = ("outbox_events",),
        priority: int = DEFAULT_PRIORITY,
    ) -> None:
        self._tables = frozenset(t.lower() for t in tables)
        self.priority = priority
        self.observed: Counter[str] = Counter()

    def can_handle(self, table_name: str) -> bool:
        return table_name.lower() in self._tables

    async def handle(self, event: ChangeEvent) -> None:
        row = event.row
        event_type = str(row.get("event_type") or "unknown")
        if event.operation == Operation.INSERT:
            self.observed[event_type] += 1
            logger.info(
                "outbox.event_observed",
                id=row.get("id"),
                event_type=event_type,
                aggregate_type=row.get("aggregate_type"),
                aggregate_id=row.get("aggregate_id"),
            )
        elif (
            event.operation == Operation.UPDATE
            and "processed" in event.changed_columns
        ):
            logger.info(
                "outbox.event_published", id=row.get("id"), event_type=event_type
            )
        elif event.operation == Operation.DELETE:
            logger.info(
                "outbox.event_removed", id=row.get("id"), event_type=event_type
            )


class GenericChangeHandler:
    """Catch-all audit handler; sorted after every specific handler."""

    name = "audit"
    catch_all = True

    def __init__(self, priority: int = DEFAULT_PRIORITY) -> None:
        self.priority = priority
        self.seen: Counter[str] = Counter()

    def can_handle(self, table_name: str) -> bool:
        return True

    async def handle(self, event: ChangeEvent) -> None:
        self.seen[event.table_name.lower()] += 1
        logger.debug(
            "change.audit",
            table=event.qualified_table,
            operation=event.operation.value,
            position=event.position,
            changed=sorted(event.changed_columns),
        )

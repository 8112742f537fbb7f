"""Dead-letter table for events that failed processing."""

from __future__ import annotations

import json
import traceback

import structlog

from cdc_relay.events.model import ChangeEvent
from cdc_relay.store.base import DataStore, quote_ident

logger = structlog.get_logger()


class DeadLetterWriter:
    """Persists failed events with diagnostic context for later replay."""

    def __init__(
        self,
        store: DataStore,
        table_name: str = "cdc_dead_letter_events",
        *,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._table = quote_ident(table_name)
        self._table_name = table_name
        self._enabled = enabled

    async def ensure_table(self) -> None:
        if not self._enabled:
            return
        await self._store.execute(
            f"CREATE TABLE IF NOT EXISTS {self._table} ("
            "id bigserial PRIMARY KEY, "
            "table_name text NOT NULL, "
            "event_type text NOT NULL, "
            "event_data jsonb NOT NULL, "
            "error_message text, "
            "error_stack_trace text, "
            "created_at timestamptz NOT NULL DEFAULT now(), "
            "retry_count integer NOT NULL DEFAULT 0, "
            "original_lsn text)"
        )
        logger.info("dead_letter.table_ensured", table=self._table_name)

    async def write(self, event: ChangeEvent, error: BaseException) -> bool:
        """Record *event*; returns False when disabled or the write failed."""
        if not self._enabled:
            return False
        stack = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
        try:
            await self._store.execute(
                f"INSERT INTO {self._table} "  # noqa: S608
                "(table_name, event_type, event_data, error_message, "
                "error_stack_trace, original_lsn) "
                "VALUES (%s, %s, %s::jsonb, %s, %s, %s)",
                (
                    event.table_name,
                    event.operation.value,
                    json.dumps(event.to_dict(), default=str),
                    str(error),
                    stack,
                    event.position,
                ),
            )
        except Exception as exc:
            logger.error(
                "dead_letter.write_failed",
                table=event.table_name,
                original_error=str(error),
                dead_letter_error=str(exc),
            )
            return False
        logger.warning(
            "dead_letter.event_recorded",
            table=event.table_name,
            operation=event.operation.value,
            error=str(error),
        )
        return True

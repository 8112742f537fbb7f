"""SQL access to the outbox table."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import structlog

from cdc_relay.config.models import OutboxConfig
from cdc_relay.outbox.models import OutboxEntry
from cdc_relay.store.base import DataStore, qualified, quote_ident

logger = structlog.get_logger()


class OutboxStore:
    """Reads and updates outbox rows through a :class:`DataStore`.

    Producers call :meth:`enqueue` with the transaction-bound store of the
    business transaction, so the outbox row commits or rolls back with it.
    """

    def __init__(self, store: DataStore, config: OutboxConfig) -> None:
        self._store = store
        self._config = config
        self._table = qualified(config.schema_name, config.table_name)

    @property
    def config(self) -> OutboxConfig:
        return self._config

    async def ensure_table(self) -> None:
        index = quote_ident(f"ix_{self._config.table_name}_unprocessed")
        await self._store.execute(
            f"CREATE TABLE IF NOT EXISTS {self._table} ("  # noqa: S608
            "id uuid PRIMARY KEY DEFAULT gen_random_uuid(), "
            "aggregate_type text NOT NULL, "
            "aggregate_id text NOT NULL, "
            "event_type text NOT NULL, "
            "payload jsonb NOT NULL, "
            "created_at timestamptz NOT NULL DEFAULT now(), "
            "processed boolean NOT NULL DEFAULT false, "
            "processed_at timestamptz, "
            "retry_count integer NOT NULL DEFAULT 0)"
        )
        await self._store.execute(
            f"CREATE INDEX IF NOT EXISTS {index} "
            f"ON {self._table} (created_at) WHERE NOT processed"
        )
        logger.info("outbox.table_ensured", table=self._config.qualified_name)

    async def enqueue(
        self,
        tx: DataStore,
        *,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: Any,
    ) -> OutboxEntry:
        """Insert an outbox row inside the caller's transaction."""
        row = await tx.fetchrow(
            f"INSERT INTO {self._table} "  # noqa: S608
            "(aggregate_type, aggregate_id, event_type, payload) "
            "VALUES (%s, %s, %s, %s::jsonb) RETURNING *",
            (
                aggregate_type,
                aggregate_id,
                event_type,
                json.dumps(payload, default=str),
            ),
        )
        if row is None:
            msg = "Outbox insert returned no row"
            raise RuntimeError(msg)
        return OutboxEntry.from_row(row)

    async def fetch_unprocessed(self, limit: int) -> list[OutboxEntry]:
        rows = await self._store.fetch(
            f"SELECT * FROM {self._table} WHERE processed = false "  # noqa: S608
            "ORDER BY created_at ASC LIMIT %s",
            (limit,),
        )
        return [OutboxEntry.from_row(r) for r in rows]

    async def mark_processed_tracked(
        self, entry_id: str, processed_at: datetime, expected_retry_count: int
    ) -> int:
        """Optimistic update: only matches the row version that was loaded."""
        return await self._store.execute(
            f"UPDATE {self._table} "  # noqa: S608
            "SET processed = true, processed_at = %s "
            "WHERE id = %s AND processed = false AND retry_count = %s",
            (processed_at, entry_id, expected_retry_count),
        )

    async def mark_processed_direct(
        self, entry_id: str, processed_at: datetime
    ) -> int:
        """Idempotent fallback used when the tracked update matched nothing."""
        return await self._store.execute(
            f"UPDATE {self._table} "  # noqa: S608
            "SET processed = true, processed_at = %s "
            "WHERE id = %s AND processed = false",
            (processed_at, entry_id),
        )

    async def reload(self, entry_id: str) -> OutboxEntry | None:
        row = await self._store.fetchrow(
            f"SELECT * FROM {self._table} WHERE id = %s",  # noqa: S608
            (entry_id,),
        )
        return OutboxEntry.from_row(row) if row is not None else None

    async def increment_retry(self, entry_id: str) -> int:
        return await self._store.execute(
            f"UPDATE {self._table} SET retry_count = retry_count + 1 "  # noqa: S608
            "WHERE id = %s AND processed = false",
            (entry_id,),
        )

    async def pending_count(self) -> int:
        value = await self._store.fetchval(
            f"SELECT count(*) FROM {self._table} WHERE processed = false"  # noqa: S608
        )
        return int(value or 0)


def describe_entry(entry: OutboxEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "aggregate_type": entry.aggregate_type,
        "aggregate_id": entry.aggregate_id,
        "event_type": entry.event_type,
        "retry_count": entry.retry_count,
    }

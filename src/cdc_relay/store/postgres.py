"""psycopg3 async implementation of the DataStore protocol."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from cdc_relay.store.base import DataStore, Params

logger = structlog.get_logger()

_TABLE_EXISTS_SQL = (
    "SELECT 1 FROM information_schema.tables "
    "WHERE table_schema = %s AND table_name = %s"
)


class _ConnectionQueries:
    """Query helpers shared by the pooled store and transaction-bound stores."""

    async def _connection(self) -> Any:
        raise NotImplementedError

    async def fetch(self, query: str, params: Params = None) -> list[dict[str, Any]]:
        conn = await self._connection()
        cur = await conn.execute(query, params)
        if cur.description is None:
            return []
        return list(await cur.fetchall())

    async def fetchrow(
        self, query: str, params: Params = None
    ) -> dict[str, Any] | None:
        conn = await self._connection()
        cur = await conn.execute(query, params)
        if cur.description is None:
            return None
        row: dict[str, Any] | None = await cur.fetchone()
        return row

    async def fetchval(self, query: str, params: Params = None) -> Any:
        row = await self.fetchrow(query, params)
        if not row:
            return None
        return next(iter(row.values()))

    async def execute(self, query: str, params: Params = None) -> int:
        conn = await self._connection()
        cur = await conn.execute(query, params)
        return max(cur.rowcount, 0)

    async def table_exists(self, schema: str, name: str) -> bool:
        return await self.fetchrow(_TABLE_EXISTS_SQL, (schema, name)) is not None


class _TransactionStore(_ConnectionQueries):
    """Store bound to an open transaction on a dedicated connection."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    async def _connection(self) -> Any:
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DataStore]:
        # Nested blocks become savepoints.
        async with self._conn.transaction():
            yield self

    async def close(self) -> None:
        """Owned by the enclosing transaction; nothing to release."""


class PostgresStore(_ConnectionQueries):
    """DataStore backed by a persistent autocommit psycopg connection.

    The connection is opened lazily and re-opened when found closed.
    Concurrent first uses share a single open.
    ``transaction()`` runs on its own short-lived connection so a long
    transaction never blocks the shared one.
    """

    def __init__(self, conninfo: str, *, name: str = "store") -> None:
        self._conninfo = conninfo
        self._name = name
        self._conn: Any = None
        self._open_lock = asyncio.Lock()

    async def open(self) -> None:
        import psycopg
        from psycopg.rows import dict_row

        self._conn = await psycopg.AsyncConnection.connect(
            self._conninfo, autocommit=True, row_factory=dict_row
        )
        logger.info("store.connected", store=self._name)

    async def _connection(self) -> Any:
        if self._conn is None or self._conn.closed:
            async with self._open_lock:
                if self._conn is None or self._conn.closed:
                    await self.open()
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DataStore]:
        import psycopg
        from psycopg.rows import dict_row

        async with await psycopg.AsyncConnection.connect(
            self._conninfo, row_factory=dict_row
        ) as conn:
            async with conn.transaction():
                yield _TransactionStore(conn)

    async def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            await self._conn.close()
            logger.info("store.closed", store=self._name)
        self._conn = None

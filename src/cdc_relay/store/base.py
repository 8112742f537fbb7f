"""DataStore protocol consumed by every capture component.

Components never open their own database sessions; they are handed a
``DataStore`` and issue parameterized SQL through it.  Placeholders use the
``%s`` paramstyle.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol, runtime_checkable

Params = Sequence[Any] | None


@runtime_checkable
class DataStore(Protocol):
    """Async access to a relational store."""

    async def fetch(self, query: str, params: Params = None) -> list[dict[str, Any]]:
        """Run a query and return all rows as dicts."""
        ...

    async def fetchrow(
        self, query: str, params: Params = None
    ) -> dict[str, Any] | None:
        """Run a query and return the first row, or None."""
        ...

    async def fetchval(self, query: str, params: Params = None) -> Any:
        """Run a query and return the first column of the first row."""
        ...

    async def execute(self, query: str, params: Params = None) -> int:
        """Run a statement and return the affected row count."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[DataStore]:
        """Open a transaction; the yielded store is bound to it."""
        ...

    async def table_exists(self, schema: str, name: str) -> bool:
        """Exact-match catalog lookup for a table."""
        ...

    async def close(self) -> None: ...


def quote_ident(name: str) -> str:
    """Quote an SQL identifier, doubling embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def qualified(schema: str, name: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def quote_literal(value: str) -> str:
    """Quote a string literal for utility statements that take no parameters."""
    return "'" + value.replace("'", "''") + "'"

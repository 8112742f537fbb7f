"""Shared fixtures: an in-memory DataStore that records and replays SQL."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest


class FakeStore:
    """Scripted stand-in for :class:`cdc_relay.store.base.DataStore`.

    ``script(fragment, *results)`` answers any statement containing
    *fragment*.  Successive calls consume the results in order and the last
    one repeats.  A result may be rows, a single row, a scalar, an int row
    count, an exception instance (raised) or a callable taking the params.
    """

    def __init__(self) -> None:
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.tables: set[tuple[str, str]] = set()
        self.table_lookups: list[tuple[str, str]] = []
        self.transactions = 0
        self.rollbacks = 0
        self.closed = False
        self._scripts: list[tuple[str, list[Any]]] = []

    def script(self, fragment: str, *results: Any) -> None:
        self._scripts.insert(0, (fragment, list(results)))

    def fail(self, fragment: str, exc: Exception) -> None:
        self.script(fragment, exc)

    def queries(self, fragment: str) -> list[tuple[str, tuple[Any, ...]]]:
        return [(q, p) for q, p in self.executed if fragment in q]

    def _result(self, query: str, params: Any) -> Any:
        bound = tuple(params or ())
        self.executed.append((query, bound))
        for fragment, results in self._scripts:
            if fragment in query:
                value = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(value, BaseException):
                    raise value
                if callable(value):
                    return value(bound)
                return value
        return None

    async def fetch(self, query: str, params: Any = None) -> list[dict[str, Any]]:
        value = self._result(query, params)
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return list(value)

    async def fetchrow(self, query: str, params: Any = None) -> dict[str, Any] | None:
        value = self._result(query, params)
        if isinstance(value, list):
            return value[0] if value else None
        return value

    async def fetchval(self, query: str, params: Any = None) -> Any:
        value = self._result(query, params)
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            return next(iter(value.values()))
        return value

    async def execute(self, query: str, params: Any = None) -> int:
        value = self._result(query, params)
        return 1 if value is None else int(value)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[FakeStore]:
        self.transactions += 1
        try:
            yield self
        except BaseException:
            self.rollbacks += 1
            raise

    async def table_exists(self, schema: str, name: str) -> bool:
        self.table_lookups.append((schema, name))
        return (schema, name) in self.tables

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def store_factory() -> Callable[[], FakeStore]:
    return FakeStore


class RecordingSleep:
    """Injectable sleep that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()

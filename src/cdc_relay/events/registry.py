"""Event dispatch registry.

Routes each :class:`ChangeEvent` to every handler whose table predicate
matches.  Handlers may be plain functions or coroutine functions.  They run
concurrently; a failing handler is logged and never prevents its siblings
from running.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import structlog

from cdc_relay.events.model import ChangeEvent

logger = structlog.get_logger()

HandlerFn = Callable[[ChangeEvent], Awaitable[None] | None]

DEFAULT_PRIORITY = 100


@runtime_checkable
class ChangeHandler(Protocol):
    """A handler object that chooses its own tables."""

    name: str
    priority: int
    catch_all: bool

    def can_handle(self, table_name: str) -> bool: ...

    async def handle(self, event: ChangeEvent) -> None: ...


@dataclass(frozen=True, slots=True)
class _Registration:
    name: str
    table: str | None
    matches: Callable[[str], bool]
    callback: HandlerFn
    priority: int
    catch_all: bool
    seq: int
    owner: object | None = None

    @property
    def sort_key(self) -> tuple[bool, int, int]:
        return (self.catch_all, self.priority, self.seq)


async def _invoke(callback: HandlerFn, event: ChangeEvent) -> None:
    result = callback(event)
    if inspect.isawaitable(result):
        await result


class EventDispatchRegistry:
    """Table-keyed handler registry with concurrent fan-out.

    Registrations live in an immutable tuple that is swapped on every
    change, so ``dispatch`` works on a consistent snapshot without locking.
    """

    def __init__(self) -> None:
        self._registrations: tuple[_Registration, ...] = ()
        self._lock = threading.Lock()
        self._seq = itertools.count()

    def _swap(self, registrations: list[_Registration]) -> None:
        self._registrations = tuple(sorted(registrations, key=lambda r: r.sort_key))

    def subscribe(
        self,
        table_name: str,
        handler: HandlerFn,
        *,
        name: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """Register *handler* for one table (case-insensitive match)."""
        key = table_name.lower()
        label = name or getattr(handler, "__qualname__", repr(handler))
        with self._lock:
            reg = _Registration(
                name=label,
                table=key,
                matches=lambda t, _key=key: t.lower() == _key,
                callback=handler,
                priority=priority,
                catch_all=False,
                seq=next(self._seq),
            )
            self._swap([*self._registrations, reg])
        logger.info("registry.subscribed", table=table_name, handler=label)
        return label

    def unsubscribe(self, table_name: str) -> int:
        """Remove every table subscription for *table_name*; returns the count."""
        key = table_name.lower()
        with self._lock:
            kept = [r for r in self._registrations if r.table != key]
            removed = len(self._registrations) - len(kept)
            self._swap(kept)
        logger.info("registry.unsubscribed", table=table_name, removed=removed)
        return removed

    def register(self, handler: ChangeHandler) -> None:
        """Register a handler object that decides its own tables."""
        with self._lock:
            reg = _Registration(
                name=handler.name,
                table=None,
                matches=handler.can_handle,
                callback=handler.handle,
                priority=handler.priority,
                catch_all=handler.catch_all,
                seq=next(self._seq),
                owner=handler,
            )
            self._swap([*self._registrations, reg])
        logger.info(
            "registry.handler_registered",
            handler=handler.name,
            priority=handler.priority,
            catch_all=handler.catch_all,
        )

    def unregister(self, handler: ChangeHandler) -> bool:
        with self._lock:
            kept = [r for r in self._registrations if r.owner is not handler]
            removed = len(kept) != len(self._registrations)
            self._swap(kept)
        return removed

    def handlers_for(self, table_name: str) -> list[str]:
        """Names of the handlers *table_name* would dispatch to, in order."""
        return [r.name for r in self._registrations if r.matches(table_name)]

    def subscriptions(self) -> dict[str, int]:
        """Per-table subscription counts (handler objects excluded)."""
        counts: dict[str, int] = {}
        for reg in self._registrations:
            if reg.table is not None:
                counts[reg.table] = counts.get(reg.table, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._registrations)

    async def dispatch(self, event: ChangeEvent) -> int:
        """Invoke all matching handlers and return how many succeeded."""
        matched = [r for r in self._registrations if r.matches(event.table_name)]
        if not matched:
            logger.debug("registry.no_handlers", table=event.table_name)
            return 0

        results = await asyncio.gather(
            *(_invoke(r.callback, event) for r in matched), return_exceptions=True
        )
        succeeded = 0
        for reg, result in zip(matched, results, strict=True):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    "registry.handler_failed",
                    handler=reg.name,
                    table=event.table_name,
                    operation=event.operation.value,
                    error=str(result),
                    exc_info=result,
                )
            else:
                succeeded += 1
        return succeeded

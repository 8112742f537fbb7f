"""Reads pending changes from a logical slot through the SQL slot functions.

Changes are peeked (not consumed), handed to a consumer, and only then is
the slot advanced past them.  A failure anywhere before the advance leaves
the changes in the slot for the next read.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from cdc_relay.events.model import ChangeEvent
from cdc_relay.sources.wal.decoder import PgOutputDecoder
from cdc_relay.sources.wal.models import lsn_to_int
from cdc_relay.store.base import DataStore

logger = structlog.get_logger()

BatchConsumer = Callable[[list[ChangeEvent]], Awaitable[Any]]

_PEEK_SQL = (
    "SELECT lsn::text AS lsn, xid::text AS xid, data "
    "FROM pg_logical_slot_peek_binary_changes("
    "%s, NULL, %s, 'proto_version', '1', 'publication_names', %s)"
)
_ADVANCE_SQL = "SELECT pg_replication_slot_advance(%s, %s::pg_lsn)"


class SlotChangeReader:
    """Pulls decoded change batches from one pgoutput slot."""

    def __init__(
        self,
        store: DataStore,
        slot_name: str,
        publication_name: str,
        *,
        max_changes: int = 1000,
    ) -> None:
        self._store = store
        self._slot_name = slot_name
        self._publication_name = publication_name
        self._max_changes = max_changes

    async def read(self, consumer: BatchConsumer) -> int:
        """Deliver one batch to *consumer*; returns the number of row changes."""
        rows = await self._store.fetch(
            _PEEK_SQL, (self._slot_name, self._max_changes, self._publication_name)
        )
        if not rows:
            return 0

        # Each peek is a fresh decoding session; Relation messages are resent.
        decoder = PgOutputDecoder()
        events: list[ChangeEvent] = []
        for row in rows:
            events.extend(decoder.decode(bytes(row["data"]), lsn_to_int(row["lsn"])))

        if events:
            await consumer(events)

        last_lsn = str(rows[-1]["lsn"])
        await self._store.execute(_ADVANCE_SQL, (self._slot_name, last_lsn))
        logger.info(
            "wal.slot_changes_consumed",
            slot=self._slot_name,
            messages=len(rows),
            changes=len(events),
            advanced_to=last_lsn,
        )
        return len(events)

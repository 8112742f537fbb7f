"""Subscription management on the subscriber (target) database."""

from __future__ import annotations

from typing import Any

import structlog

from cdc_relay.store.base import DataStore, quote_ident, quote_literal

logger = structlog.get_logger()

_SUBSCRIPTION_SQL = (
    "SELECT subname, subenabled, subslotname, subpublications "
    "FROM pg_subscription WHERE subname = %s"
)

_LAG_SQL = (
    "SELECT COALESCE(pg_wal_lsn_diff(pg_current_wal_lsn(), replay_lsn), 0)"
    "::bigint AS lag_bytes "
    "FROM pg_stat_replication WHERE application_name = %s"
)


class SubscriptionManager:
    """Creates and inspects a logical replication subscription.

    The subscription lives on the *target* store; replication lag is read
    from ``pg_stat_replication`` on the *source* store.
    """

    def __init__(
        self,
        target: DataStore,
        source: DataStore,
        *,
        subscription_name: str,
        publication_name: str,
        source_conninfo: str,
        copy_data: bool = True,
    ) -> None:
        self._target = target
        self._source = source
        self._subscription_name = subscription_name
        self._publication_name = publication_name
        self._source_conninfo = source_conninfo
        self._copy_data = copy_data

    @property
    def subscription_name(self) -> str:
        return self._subscription_name

    async def get_state(self) -> dict[str, Any] | None:
        row = await self._target.fetchrow(_SUBSCRIPTION_SQL, (self._subscription_name,))
        if row is None:
            return None
        publications = row.get("subpublications") or []
        return {
            "name": row.get("subname"),
            "enabled": bool(row.get("subenabled")),
            "slot_name": row.get("subslotname"),
            "publications": list(publications),
        }

    async def ensure_subscription(self) -> bool:
        """Create the subscription if missing; True when created."""
        if await self.get_state() is not None:
            logger.info("wal.subscription_exists", name=self._subscription_name)
            return False

        copy_data = "true" if self._copy_data else "false"
        # CREATE SUBSCRIPTION accepts no bind parameters.
        await self._target.execute(
            f"CREATE SUBSCRIPTION {quote_ident(self._subscription_name)} "
            f"CONNECTION {quote_literal(self._source_conninfo)} "
            f"PUBLICATION {quote_ident(self._publication_name)} "
            f"WITH (copy_data = {copy_data})"
        )
        logger.info(
            "wal.subscription_created",
            name=self._subscription_name,
            publication=self._publication_name,
            copy_data=self._copy_data,
        )
        return True

    async def get_lag_bytes(self) -> int | None:
        """Bytes the subscriber trails the source WAL, or None if not streaming."""
        row = await self._source.fetchrow(_LAG_SQL, (self._subscription_name,))
        if row is None:
            return None
        return int(row.get("lag_bytes") or 0)

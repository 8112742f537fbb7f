"""SQL builders for watermark-based change detection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from cdc_relay.config.models import TableConfig
from cdc_relay.store.base import qualified, quote_ident

# Bookkeeping columns prepended to every change row.
OPERATION_COLUMN = "_cdc_operation"
XID_COLUMN = "_cdc_xid"
EVENT_TIME_COLUMN = "_cdc_event_time"
BOOKKEEPING_COLUMNS = frozenset({OPERATION_COLUMN, XID_COLUMN, EVENT_TIME_COLUMN})

SLOT_INFO_SQL = (
    "SELECT slot_name, plugin, slot_type, database, active, "
    "restart_lsn::text AS restart_lsn, "
    "confirmed_flush_lsn::text AS confirmed_flush_lsn "
    "FROM pg_replication_slots"
)


@dataclass(frozen=True, slots=True)
class ChangeQuery:
    sql: str
    tracked: bool

    def params(self, watermark: datetime) -> tuple[datetime, ...]:
        return (watermark, watermark, watermark) if self.tracked else (watermark,)


def table_name_variants(name: str) -> list[str]:
    """Spellings probed when resolving a configured table name.

    Order: as given, lower, upper, capitalized.  Duplicates are dropped.
    """
    variants: list[str] = []
    for candidate in (name, name.lower(), name.upper(), name.capitalize()):
        if candidate not in variants:
            variants.append(candidate)
    return variants


def build_change_query(table: TableConfig, physical_name: str) -> ChangeQuery:
    """Build the change query for *table* resolved to *physical_name*.

    Tables with an updated column yield inserts (created after the
    watermark) and updates (updated after it, created at or before it).
    An insert that was also updated before the poll is stamped with its
    latest change time, so the watermark passes the update as well and
    the row is not reported again as an update.  Other tables yield
    inserts only.
    """
    source = qualified(table.schema_name, physical_name)
    created = f"t.{quote_ident(table.created_column)}"

    if table.updated_column is None:
        return ChangeQuery(
            sql=(
                f"{_insert_branch(source, created, created)} "
                f"ORDER BY {EVENT_TIME_COLUMN} ASC"
            ),
            tracked=False,
        )

    updated = f"t.{quote_ident(table.updated_column)}"
    latest = f"GREATEST({created}, COALESCE({updated}, {created}))"
    update_branch = (
        f"SELECT 'UPDATE' AS {OPERATION_COLUMN}, t.xmin::text AS {XID_COLUMN}, "
        f"{updated} AS {EVENT_TIME_COLUMN}, t.* "
        f"FROM {source} t WHERE {updated} > %s AND {created} <= %s"
    )
    return ChangeQuery(
        sql=(
            f"SELECT * FROM ({_insert_branch(source, created, latest)} "
            f"UNION ALL {update_branch}) changes "
            f"ORDER BY {EVENT_TIME_COLUMN} ASC"
        ),
        tracked=True,
    )


def _insert_branch(source: str, created: str, event_time: str) -> str:
    return (
        f"SELECT 'INSERT' AS {OPERATION_COLUMN}, t.xmin::text AS {XID_COLUMN}, "
        f"{event_time} AS {EVENT_TIME_COLUMN}, t.* "
        f"FROM {source} t WHERE {created} > %s"
    )

"""pgoutput (protocol version 1) message decoder.

Begin, Relation and Commit messages only update decoder state; Insert,
Update and Delete messages each produce one :class:`ChangeEvent`.  Other
message types (Origin, Type, Truncate) are ignored.

Column values arrive in text format and are converted to Python scalars for
the common built-in types; anything else stays a string.

Reference: https://www.postgresql.org/docs/current/protocol-logicalrep-message-formats.html
"""

from __future__ import annotations

import json
import struct
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from cdc_relay.events.model import ChangeEvent, Operation
from cdc_relay.sources.wal.models import int_to_lsn

# Commit timestamps count microseconds from 2000-01-01 UTC.
PG_EPOCH = datetime(2000, 1, 1, tzinfo=UTC)

_CONVERTERS: dict[int, Callable[[str], Any]] = {
    16: lambda text: text == "t",  # bool
    20: int,  # int8
    21: int,  # int2
    23: int,  # int4
    26: int,  # oid
    700: float,  # float4
    701: float,  # float8
    1700: float,  # numeric
    114: json.loads,  # json
    3802: json.loads,  # jsonb
}


def convert_text_value(type_oid: int, text: str) -> Any:
    """Convert a text-format column value by its type OID."""
    converter = _CONVERTERS.get(type_oid)
    if converter is None:
        return text
    try:
        return converter(text)
    except ValueError:
        return text


class _Cursor:
    """Sequential big-endian reader over one message body."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def _unpack(self, fmt: str) -> Any:
        (value,) = struct.unpack_from(fmt, self._data, self._pos)
        self._pos += struct.calcsize(fmt)
        return value

    def byte(self) -> str:
        value = chr(self._data[self._pos])
        self._pos += 1
        return value

    def peek(self) -> str:
        return chr(self._data[self._pos])

    def int16(self) -> int:
        return int(self._unpack("!H"))

    def int32(self) -> int:
        return int(self._unpack("!I"))

    def int64(self) -> int:
        return int(self._unpack("!q"))

    def uint64(self) -> int:
        return int(self._unpack("!Q"))

    def cstring(self) -> str:
        end = self._data.index(0, self._pos)
        value = self._data[self._pos : end].decode("utf-8")
        self._pos = end + 1
        return value

    def text(self, length: int) -> str:
        value = self._data[self._pos : self._pos + length].decode("utf-8")
        self._pos += length
        return value

    def skip(self, count: int) -> None:
        self._pos += count


@dataclass(frozen=True, slots=True)
class _Relation:
    schema: str
    table: str
    columns: tuple[tuple[str, int], ...]  # (name, type oid)


class PgOutputDecoder:
    """Stateful pgoutput decoder.

    Keeps the relation cache needed to name tuple columns, plus the commit
    LSN, commit time and xid of the transaction being decoded.
    """

    def __init__(self) -> None:
        self._relations: dict[int, _Relation] = {}
        self._commit_lsn = 0
        self._commit_time = PG_EPOCH
        self._xid: int | None = None

    def decode(self, data: bytes, lsn: int | None = None) -> list[ChangeEvent]:
        """Decode one message into zero or one change event.

        *lsn* is the message's own WAL position when the caller knows it;
        otherwise events carry the commit LSN from the enclosing Begin.
        """
        if not data:
            return []
        kind, body = chr(data[0]), _Cursor(data[1:])
        position = int_to_lsn(self._commit_lsn if lsn is None else lsn)

        if kind == "B":
            self._begin(body)
        elif kind == "C":
            self._xid = None
        elif kind == "R":
            self._relation(body)
        elif kind in _ROW_OPERATIONS:
            return [self._row_change(_ROW_OPERATIONS[kind], body, position)]
        return []

    def _begin(self, body: _Cursor) -> None:
        self._commit_lsn = body.uint64()
        self._commit_time = PG_EPOCH + timedelta(microseconds=body.int64())
        self._xid = body.int32()

    def _relation(self, body: _Cursor) -> None:
        rel_id = body.int32()
        schema = body.cstring()
        table = body.cstring()
        body.skip(1)  # replica identity setting
        columns = []
        for _ in range(body.int16()):
            body.skip(1)  # flags
            name = body.cstring()
            columns.append((name, body.int32()))
            body.skip(4)  # type modifier
        self._relations[rel_id] = _Relation(schema, table, tuple(columns))

    def _row_change(
        self, operation: Operation, body: _Cursor, position: str
    ) -> ChangeEvent:
        relation = self._relations[body.int32()]
        before = after = None
        # Update: optional 'K'/'O' old tuple, then 'N' new tuple.
        # Delete: 'K'/'O' old tuple.  Insert: 'N' new tuple.
        if body.peek() in ("K", "O"):
            body.skip(1)
            before = self._tuple(body, relation)
        if operation != Operation.DELETE:
            body.skip(1)  # 'N'
            after = self._tuple(body, relation, unchanged=before)
        return ChangeEvent.build(
            operation,
            relation.schema,
            relation.table,
            before=before,
            after=after,
            event_time=self._commit_time,
            transaction_id=None if self._xid is None else str(self._xid),
            position=position,
            metadata={"source": "slot"},
        )

    @staticmethod
    def _tuple(
        body: _Cursor,
        relation: _Relation,
        unchanged: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Read one tuple.

        Unchanged TOASTed columns are copied from *unchanged* when it has
        them and otherwise left out of the row.
        """
        row: dict[str, Any] = {}
        for index in range(body.int16()):
            if index < len(relation.columns):
                name, type_oid = relation.columns[index]
            else:
                name, type_oid = f"col_{index}", 0
            marker = body.byte()
            if marker == "t":
                row[name] = convert_text_value(type_oid, body.text(body.int32()))
            elif marker == "u":
                if unchanged is not None and name in unchanged:
                    row[name] = unchanged[name]
            else:
                row[name] = None
        return row


_ROW_OPERATIONS = {
    "I": Operation.INSERT,
    "U": Operation.UPDATE,
    "D": Operation.DELETE,
}

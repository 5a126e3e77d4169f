from __future__ import annotations

from typing import Any, Sequence

from snapvault.exporter.dialect import DialectStrategy
from snapvault.exporter.types import ColumnInfo, ColumnKind


def _as_bytes(value: Any) -> bytes | None:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, memoryview):
        return value.tobytes()
    return None


def encode_value(value: Any, column: ColumnInfo, dialect: DialectStrategy) -> str:
    raw_bytes = _as_bytes(value)

    if column.kind is ColumnKind.INTEGER:
        if value is None or value == "":
            return "NULL" if column.default is None else (column.default or "''")
        if isinstance(value, bool):
            return "1" if value else "0"
        if raw_bytes is not None:
            return "X'" + raw_bytes.hex().upper() + "'" if raw_bytes else "''"
        return str(value)

    if column.kind is ColumnKind.BIT:
        if value is None:
            return "NULL"
        number = int.from_bytes(raw_bytes, "big") if raw_bytes is not None else int(value)
        return "b'" + format(number, "b").zfill(column.bit_width) + "'"

    if value is None:
        return "NULL"
    if raw_bytes is not None:
        return "X'" + raw_bytes.hex().upper() + "'" if raw_bytes else "''"
    if column.kind is ColumnKind.BINARY:
        encoded = str(value).encode("utf-8")
        return "X'" + encoded.hex().upper() + "'" if encoded else "''"
    if isinstance(value, bool):
        return "1" if value else "0"
    return dialect.escape_text(str(value))


def encode_row(row: Sequence[Any], columns: Sequence[ColumnInfo], dialect: DialectStrategy) -> str:
    return "(" + ", ".join(encode_value(value, column, dialect) for value, column in zip(row, columns)) + ")"

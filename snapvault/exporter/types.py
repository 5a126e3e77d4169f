from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class ColumnKind(str, Enum):
    INTEGER = "integer"
    BINARY = "binary"
    BIT = "bit"
    TEXT = "text"


class PaginationMode(str, Enum):
    PRIMARY_KEY = "primary_key"
    OFFSET = "offset"


@dataclass(slots=True)
class ColumnInfo:
    name: str
    kind: ColumnKind
    default: str | None = None
    unsigned: bool = False
    bit_width: int = 1
    generated: bool = False


@dataclass(slots=True)
class TableDumpSegment:
    table_name: str
    cursor: int | None
    file_path: Path


@dataclass
class TableExportState:
    """Per-table resumption record, persisted in the job's task data."""

    cursor: int | None = None
    mode: PaginationMode | None = None
    segments: list[str] = field(default_factory=list)
    rows: int = 0
    done: bool = False
    errors: int = 0
    is_view: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cursor": self.cursor,
            "mode": None if self.mode is None else self.mode.value,
            "segments": list(self.segments),
            "rows": self.rows,
            "done": self.done,
            "errors": self.errors,
            "is_view": self.is_view,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "TableExportState":
        if not raw:
            return cls()
        mode = raw.get("mode")
        return cls(
            cursor=raw.get("cursor"),
            mode=None if mode is None else PaginationMode(mode),
            segments=list(raw.get("segments") or []),
            rows=int(raw.get("rows") or 0),
            done=bool(raw.get("done")),
            errors=int(raw.get("errors") or 0),
            is_view=bool(raw.get("is_view")),
        )

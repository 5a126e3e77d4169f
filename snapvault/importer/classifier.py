from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class StatementType(str, Enum):
    DROP_TABLE = "drop_table"
    CREATE_TABLE = "create_table"
    CREATE_INDEX = "create_index"
    INSERT = "insert"
    ALTER_LOCK = "alter_lock"
    UNLOCK = "unlock"
    SET_NAMES = "set_names"
    CREATE_TRIGGER = "create_trigger"
    DROP_TRIGGER = "drop_trigger"
    CREATE_ROUTINE = "create_routine"
    DROP_ROUTINE = "drop_routine"
    CREATE_VIEW = "create_view"
    DROP_VIEW = "drop_view"
    USE = "use"
    CREATE_DROP_DATABASE = "create_drop_database"
    DELIMITER = "delimiter"
    GTID_PURGED = "gtid_purged"
    SQL_MODE_SET = "sql_mode_set"
    OTHER = "other"


SKIPPED_TYPES = frozenset(
    {
        StatementType.USE,
        StatementType.CREATE_DROP_DATABASE,
        StatementType.DELIMITER,
        StatementType.GTID_PURGED,
        StatementType.SQL_MODE_SET,
    }
)

_IDENT = r"(?:`(?P<quoted>(?:[^`]|``)+)`|\"(?P<dquoted>[^\"]+)\"|(?P<bare>[^\s`\"(;,]+))"
_DEFINER = r"(?:DEFINER\s*=\s*(?:`[^`]{1,80}`@`[^\s`]+`|'[^']{1,80}'@'[^\s']+'|\S+?)\s+)?"

_PATTERNS: tuple[tuple[StatementType, re.Pattern[str]], ...] = (
    (StatementType.INSERT, re.compile(r"^\s*INSERT(?:\s+IGNORE|\s+OR\s+IGNORE)?\s+INTO\s*" + _IDENT, re.I)),
    (StatementType.DROP_TABLE, re.compile(r"^\s*DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?" + _IDENT, re.I)),
    (StatementType.CREATE_TABLE, re.compile(r"^\s*CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?" + _IDENT + r"\s*\(", re.I)),
    (
        StatementType.CREATE_INDEX,
        re.compile(r"^\s*CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?\S+\s+ON\s+" + _IDENT, re.I),
    ),
    (
        StatementType.ALTER_LOCK,
        re.compile(r"^\s*(?:/\*!40000\s+)?(?:ALTER|LOCK)\s+TABLES?\s+" + _IDENT + r"\s+(?:WRITE|DISABLE|ENABLE)", re.I),
    ),
    (StatementType.UNLOCK, re.compile(r"^\s*(?:UN)?LOCK\s+TABLES", re.I)),
    (StatementType.CREATE_DROP_DATABASE, re.compile(r"^\s*(?:CREATE|DROP)\s+(?:DATABASE|SCHEMA)\s", re.I)),
    (StatementType.USE, re.compile(r"^\s*USE\s", re.I)),
    (StatementType.SET_NAMES, re.compile(r"^\s*(?:/\*!\d+\s+)?SET\s+NAMES\s", re.I)),
    (StatementType.CREATE_TRIGGER, re.compile(r"^\s*CREATE\s+" + _DEFINER + r"TRIGGER\s", re.I)),
    (StatementType.DROP_TRIGGER, re.compile(r"^\s*DROP\s+TRIGGER\s", re.I)),
    (
        StatementType.CREATE_ROUTINE,
        re.compile(r"^\s*CREATE\s+(?:OR\s+REPLACE\s+)?" + _DEFINER + r"(?:AGGREGATE\s+)?(?:PROCEDURE|FUNCTION)\s", re.I),
    ),
    (StatementType.DROP_ROUTINE, re.compile(r"^\s*DROP\s+(?:FUNCTION|PROCEDURE)\s", re.I)),
    (StatementType.DELIMITER, re.compile(r"^\s*DELIMITER\s+\S+\s*$", re.I)),
    (
        StatementType.CREATE_VIEW,
        re.compile(
            r"^\s*CREATE\s+(?:OR\s+REPLACE\s+)?(?:ALGORITHM\s*=\s*\S+\s+)?"
            + _DEFINER
            + r"(?:SQL\s+SECURITY\s+\S+\s+)?VIEW\s+(?:IF\s+NOT\s+EXISTS\s+)?"
            + _IDENT,
            re.I,
        ),
    ),
    (StatementType.DROP_VIEW, re.compile(r"^\s*DROP\s+VIEW\s+(?:IF\s+EXISTS\s+)?" + _IDENT, re.I)),
    (StatementType.GTID_PURGED, re.compile(r"^\s*SET\s+@@GLOBAL\.GTID_PURGED", re.I)),
    (StatementType.SQL_MODE_SET, re.compile(r"^\s*/\*!\d+\s+SET\s+(?:[^,].*)?(?=SQL_MODE\s*=)", re.I | re.S)),
)


@dataclass(slots=True)
class ClassifiedStatement:
    type: StatementType
    text: str
    table: str | None = None

    @property
    def skipped(self) -> bool:
        return self.type in SKIPPED_TYPES


def _identifier(match: re.Match[str]) -> str | None:
    groups = match.groupdict()
    if groups.get("quoted") is not None:
        return groups["quoted"].replace("``", "`")
    if groups.get("dquoted") is not None:
        return groups["dquoted"]
    return groups.get("bare")


def classify(text: str) -> ClassifiedStatement:
    for statement_type, pattern in _PATTERNS:
        match = pattern.match(text)
        if match is None:
            continue
        table = _identifier(match) if "quoted" in match.groupdict() else None
        return ClassifiedStatement(type=statement_type, text=text, table=table)
    return ClassifiedStatement(type=StatementType.OTHER, text=text)

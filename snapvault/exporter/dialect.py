from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from sqlalchemy import Engine, inspect, text
from sqlalchemy import types as sqltypes
from sqlalchemy.dialects import mysql

from snapvault.exporter.types import ColumnInfo, ColumnKind, PaginationMode

logger = logging.getLogger(__name__)


def backquote(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def replace_last_occurrence(search: str, replacement: str, subject: str) -> str:
    position = subject.rfind(search)
    if position < 0:
        return subject
    return subject[:position] + replacement + subject[position + len(search) :]


class DialectStrategy:
    """SQL text differences between the server families the engine can dump and replay."""

    name = "generic"
    backslash_escapes = False

    def escape_text(self, value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def session_header(self) -> list[str]:
        return []

    def session_footer(self) -> list[str]:
        return []

    def list_tables(self, engine: Engine) -> list[tuple[str, bool]]:
        inspector = inspect(engine)
        tables = [(name, False) for name in inspector.get_table_names()]
        views = [(name, True) for name in inspector.get_view_names()]
        return tables + views

    def create_statement(self, engine: Engine, table: str, is_view: bool) -> str:
        raise NotImplementedError

    def index_statements(self, engine: Engine, table: str) -> list[str]:
        return []

    def sql_mode(self, engine: Engine) -> str:
        return ""

    def server_version(self, engine: Engine) -> str:
        with engine.connect() as connection:
            info = connection.dialect.server_version_info
        return ".".join(str(part) for part in info) if info else "unknown"

    def database_name(self, engine: Engine) -> str:
        return engine.url.database or ""


class MySQLDialect(DialectStrategy):
    name = "mysql"
    backslash_escapes = True

    _ESCAPES = (("\\", "\\\\"), ("'", "\\'"), ("\x00", "\\0"), ("\n", "\\n"), ("\r", "\\r"), ("\x1a", "\\Z"))

    def escape_text(self, value: str) -> str:
        for search, replacement in self._ESCAPES:
            value = value.replace(search, replacement)
        return "'" + value + "'"

    def session_header(self) -> list[str]:
        return [
            "/*!40101 SET @OLD_CHARACTER_SET_CLIENT=@@CHARACTER_SET_CLIENT */;",
            "/*!40101 SET @OLD_CHARACTER_SET_RESULTS=@@CHARACTER_SET_RESULTS */;",
            "/*!40101 SET @OLD_COLLATION_CONNECTION=@@COLLATION_CONNECTION */;",
            "/*!40101 SET @OLD_SQL_MODE=@@SQL_MODE, SQL_MODE='NO_AUTO_VALUE_ON_ZERO' */;",
            "/*!40101 SET NAMES utf8mb4 */;",
            "/*!40101 SET foreign_key_checks = 0 */;",
        ]

    def session_footer(self) -> list[str]:
        return [
            "# Complete transaction",
            "COMMIT;",
            "SET AUTOCOMMIT = 1;",
            "SET foreign_key_checks = 1;",
            "/*!40101 SET CHARACTER_SET_CLIENT=@OLD_CHARACTER_SET_CLIENT */;",
            "/*!40101 SET CHARACTER_SET_RESULTS=@OLD_CHARACTER_SET_RESULTS */;",
            "/*!40101 SET COLLATION_CONNECTION=@OLD_COLLATION_CONNECTION */;",
            "/*!40101 SET SQL_MODE=@OLD_SQL_MODE */;",
        ]

    def list_tables(self, engine: Engine) -> list[tuple[str, bool]]:
        with engine.connect() as connection:
            rows = connection.execute(text("SHOW FULL TABLES")).all()
        return [(str(row[0]), str(row[1]).upper() == "VIEW") for row in rows]

    def create_statement(self, engine: Engine, table: str, is_view: bool) -> str:
        keyword = "VIEW" if is_view else "TABLE"
        with engine.connect() as connection:
            row = connection.execute(text(f"SHOW CREATE {keyword} {backquote(table)}")).one()
        create_line = replace_last_occurrence("TYPE=", "ENGINE=", str(row[1]))
        engine_match = re.search(r"ENGINE=([^\s;]+)", create_line)
        if engine_match is not None and engine_match.group(1).lower() == "myisam":
            create_line = re.sub(r"PAGE_CHECKSUM=\d\s?", "", create_line, count=1)
        return create_line

    def sql_mode(self, engine: Engine) -> str:
        with engine.connect() as connection:
            return str(connection.execute(text("SELECT @@SESSION.sql_mode")).scalar_one() or "")

    def server_version(self, engine: Engine) -> str:
        with engine.connect() as connection:
            return str(connection.execute(text("SELECT VERSION()")).scalar_one())


class SQLiteDialect(DialectStrategy):
    name = "sqlite"

    def session_header(self) -> list[str]:
        return ["PRAGMA foreign_keys = OFF;"]

    def session_footer(self) -> list[str]:
        return ["PRAGMA foreign_keys = ON;"]

    def create_statement(self, engine: Engine, table: str, is_view: bool) -> str:
        with engine.connect() as connection:
            sql = connection.execute(
                text("SELECT sql FROM sqlite_master WHERE type = :kind AND name = :name"),
                {"kind": "view" if is_view else "table", "name": table},
            ).scalar_one()
        return str(sql)

    def index_statements(self, engine: Engine, table: str) -> list[str]:
        with engine.connect() as connection:
            rows = connection.execute(
                text(
                    "SELECT sql FROM sqlite_master "
                    "WHERE type = 'index' AND tbl_name = :name AND sql IS NOT NULL ORDER BY name"
                ),
                {"name": table},
            ).all()
        return [str(row[0]) for row in rows]

    def server_version(self, engine: Engine) -> str:
        with engine.connect() as connection:
            return str(connection.execute(text("SELECT sqlite_version()")).scalar_one())

    def database_name(self, engine: Engine) -> str:
        database = engine.url.database or ""
        return database.rsplit("/", 1)[-1]


def dialect_for(engine: Engine) -> DialectStrategy:
    name = engine.dialect.name
    if name in {"mysql", "mariadb"}:
        return MySQLDialect()
    if name == "sqlite":
        return SQLiteDialect()
    raise ValueError(f"Unsupported database dialect: {name}")


def _column_kind(column_type: Any) -> tuple[ColumnKind, int]:
    if isinstance(column_type, mysql.BIT):
        return ColumnKind.BIT, max(1, int(column_type.length or 1))
    if isinstance(column_type, (sqltypes.LargeBinary, sqltypes.BINARY, sqltypes.VARBINARY)):
        return ColumnKind.BINARY, 1
    if isinstance(column_type, sqltypes.Integer):
        return ColumnKind.INTEGER, 1
    return ColumnKind.TEXT, 1


def _normalize_default(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        value = value[1:-1]
    return value


class SourceDatabase:
    """Read side of a site database: catalog queries plus paged row fetches."""

    def __init__(self, engine: Engine, dialect: DialectStrategy | None = None):
        self.engine = engine
        self.dialect = dialect or dialect_for(engine)

    def list_tables(self, prefix: str, all_tables: bool = False) -> tuple[list[tuple[str, bool]], list[str]]:
        """Return (selected tables as (name, is_view), skipped names).

        The prefix's options and users tables come first, the rest follow
        alphabetically.
        """
        selected: list[tuple[str, bool]] = []
        skipped: list[str] = []
        for name, is_view in self.dialect.list_tables(self.engine):
            if name.startswith("sqlite_"):
                continue
            if all_tables or name.startswith(prefix):
                selected.append((name, is_view))
            else:
                skipped.append(name)

        priority = {f"{prefix}options": 0, f"{prefix}users": 1}
        selected.sort(key=lambda item: (priority.get(item[0], 2), item[0]))
        skipped.sort()
        return selected, skipped

    def create_statement(self, table: str, is_view: bool = False) -> str:
        return self.dialect.create_statement(self.engine, table, is_view)

    def index_statements(self, table: str) -> list[str]:
        return self.dialect.index_statements(self.engine, table)

    def columns(self, table: str) -> list[ColumnInfo]:
        inspector = inspect(self.engine)
        columns: list[ColumnInfo] = []
        for raw in inspector.get_columns(table):
            kind, width = _column_kind(raw["type"])
            columns.append(
                ColumnInfo(
                    name=str(raw["name"]),
                    kind=kind,
                    default=_normalize_default(raw.get("default")),
                    unsigned=bool(getattr(raw["type"], "unsigned", False)),
                    bit_width=width,
                    generated=raw.get("computed") is not None,
                )
            )
        return columns

    def integer_primary_key(self, table: str, columns: Sequence[ColumnInfo] | None = None) -> str | None:
        inspector = inspect(self.engine)
        constrained = inspector.get_pk_constraint(table).get("constrained_columns") or []
        if len(constrained) != 1:
            return None
        known = {column.name: column for column in (columns or self.columns(table))}
        column = known.get(constrained[0])
        if column is None or column.kind is not ColumnKind.INTEGER:
            return None
        return column.name

    def fetch_page(
        self,
        table: str,
        columns: Sequence[ColumnInfo],
        mode: PaginationMode,
        cursor: int | None,
        limit: int,
        primary_key: str | None = None,
    ) -> list[tuple[Any, ...]]:
        select_list = ", ".join(backquote(column.name) for column in columns)
        params: dict[str, Any] = {"limit": limit}
        if mode is PaginationMode.PRIMARY_KEY:
            assert primary_key is not None
            where = ""
            if cursor is not None:
                where = f" WHERE {backquote(primary_key)} > :cursor"
                params["cursor"] = cursor
            sql = f"SELECT {select_list} FROM {backquote(table)}{where} ORDER BY {backquote(primary_key)} ASC LIMIT :limit"
        else:
            order_by = ", ".join(backquote(column.name) for column in columns)
            params["offset"] = cursor or 0
            sql = f"SELECT {select_list} FROM {backquote(table)} ORDER BY {order_by} LIMIT :limit OFFSET :offset"
        with self.engine.connect() as connection:
            return [tuple(row) for row in connection.execute(text(sql), params)]

    def sql_mode(self) -> str:
        return self.dialect.sql_mode(self.engine)

    def server_version(self) -> str:
        return self.dialect.server_version(self.engine)

    def database_name(self) -> str:
        return self.dialect.database_name(self.engine)

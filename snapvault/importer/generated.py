from __future__ import annotations

import re
from dataclasses import dataclass

from snapvault.exporter.dialect import backquote
from snapvault.importer.compat import ServerCapabilities

_COLUMN = re.compile(r"^\s*(?:`(?P<quoted>(?:[^`]|``)+)`|\"(?P<dquoted>[^\"]+)\"|(?P<bare>\w+))\s+(?P<definition>.+)$", re.S)
_GENERATED = re.compile(r"(?:GENERATED\s+ALWAYS\s+)?\bAS\s*\(", re.I)
_INSERT_COLUMNS = re.compile(
    r"^\s*INSERT(?:\s+IGNORE|\s+OR\s+IGNORE)?\s+INTO\s*(?:`(?:[^`]|``)+`|\"[^\"]+\"|[^\s(]+)\s*\((?P<columns>[^)]*)\)\s*VALUES",
    re.I,
)
_INSERT_HEAD = re.compile(r"^(\s*)INSERT(?:\s+IGNORE|\s+OR\s+IGNORE)?\s+INTO\b", re.I)


@dataclass(slots=True)
class GeneratedColumn:
    name: str
    definition: str
    is_virtual: bool


def split_top_level(body: str) -> list[str]:
    """Split on commas that are outside parentheses and quotes."""
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    start = 0
    position = 0
    while position < len(body):
        char = body[position]
        if quote is not None:
            if char == "\\" and quote != "`":
                position += 2
                continue
            if char == quote:
                quote = None
        elif char in {"'", '"', "`"}:
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char == "," and depth == 0:
            parts.append(body[start:position])
            start = position + 1
        position += 1
    parts.append(body[start:])
    return parts


def _table_body(create_sql: str) -> str | None:
    opening = create_sql.find("(")
    closing = create_sql.rfind(")")
    if opening < 0 or closing <= opening:
        return None
    return create_sql[opening + 1 : closing]


def parse_generated_columns(create_sql: str) -> list[GeneratedColumn]:
    body = _table_body(create_sql)
    if body is None:
        return []
    columns: list[GeneratedColumn] = []
    for part in split_top_level(body):
        match = _COLUMN.match(part)
        if match is None:
            continue
        definition = match.group("definition").strip()
        if _GENERATED.search(definition) is None:
            continue
        name = match.group("quoted") or match.group("dquoted") or match.group("bare") or ""
        if name.upper() in {"PRIMARY", "KEY", "UNIQUE", "INDEX", "CONSTRAINT", "FOREIGN", "FULLTEXT", "CHECK"}:
            continue
        storage = definition.upper()
        is_virtual = bool(re.search(r"\bVIRTUAL\b", storage)) or not re.search(r"\b(?:STORED|PERSISTENT)\b", storage)
        columns.append(GeneratedColumn(name=name.replace("``", "`"), definition=definition, is_virtual=is_virtual))
    return columns


def insert_targets_generated(insert_sql: str, generated: list[GeneratedColumn]) -> bool:
    """True when the INSERT supplies values for any generated column.

    A statement without a column list supplies every column.
    """
    match = _INSERT_COLUMNS.match(insert_sql)
    if match is None:
        return True
    named = {name.strip().strip("`\"") for name in match.group("columns").split(",")}
    return any(column.name in named for column in generated)


def to_insert_if_absent(insert_sql: str, dialect_name: str) -> str:
    keyword = "INSERT OR IGNORE INTO" if dialect_name == "sqlite" else "INSERT IGNORE INTO"
    return _INSERT_HEAD.sub(lambda match: match.group(1) + keyword, insert_sql, count=1)


def corrective_alters(table: str, generated: list[GeneratedColumn], capabilities: ServerCapabilities) -> list[str]:
    """Statements that re-apply each generated definition after the rows are in.

    Only MySQL-family servers get them; MariaDB keeps PERSISTENT while MySQL
    needs STORED.
    """
    if not capabilities.is_mysql:
        return []
    statements: list[str] = []
    for column in generated:
        definition = column.definition
        if not column.is_virtual and not capabilities.is_mariadb:
            definition = re.sub(r"\bPERSISTENT\b", "STORED", definition, flags=re.I)
        statements.append(f"ALTER TABLE {backquote(table)} MODIFY COLUMN {backquote(column.name)} {definition}")
    return statements

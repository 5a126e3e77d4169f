from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from sqlalchemy import Engine, text

from snapvault.exporter.dialect import replace_last_occurrence

logger = logging.getLogger(__name__)

SQLITE_MAX_ALLOWED_PACKET = 1024 * 1024 * 1024
MYSQL_DEFAULT_MAX_ALLOWED_PACKET = 1024 * 1024

_ENGINE = re.compile(r"ENGINE=([^\s;]+)")
_CHARSET = re.compile(r"\b(?:CHARSET|CHARACTER SET)(\s*=?\s*)([^\s;,]+)", re.I)
_COLLATE = re.compile(r"COLLATE[\s=]*([a-zA-Z0-9._-]+)", re.I)
_SET_NAMES = re.compile(r"^(\s*(?:/\*!\d+\s+)?)SET\s+NAMES\s+['\"]?([\w-]+)['\"]?", re.I)
_DEFINER = r"DEFINER\s*=\s*(?:`[^`]{1,80}`@`[^\s`]+`\s*|'[^']{1,80}'@'[^\s']+'\s*|\S+?\s+)"
_VIEW_DEFINER = re.compile(
    r"^(\s*CREATE\s+(?:OR\s+REPLACE\s+)?(?:ALGORITHM\s*=\s*\S+\s+)?)"
    r"(?:" + _DEFINER + r")?"
    r"(?:SQL\s+SECURITY\s+\S+\s+)?"
    r"(VIEW\s)",
    re.I | re.S,
)
_ROUTINE_DEFINER = re.compile(r"^(\s*CREATE\s+(?:OR\s+REPLACE\s+)?)(?:" + _DEFINER + r")", re.I | re.S)
_TRIGGER_DEFINER = re.compile(r"^(\s*CREATE\s+)(?:" + _DEFINER + r")(TRIGGER\s)", re.I | re.S)
_ROUTINE_SECURITY = re.compile(r"\bSQL\s+SECURITY\s+(?:DEFINER|INVOKER)\b", re.I)
_RETURNS = re.compile(r"\s*RETURNS\s+\w+(?:\([^)]*\))?(?:\s+CHARSET\s+\S+)?(?:\s+COLLATE\s+\S+)?", re.I)
_SQLITE_TABLE_OPTIONS = re.compile(
    r"\s*\b(?:ENGINE|AUTO_INCREMENT|ROW_FORMAT|PAGE_CHECKSUM|TRANSACTIONAL|(?:DEFAULT\s+)?(?:CHARSET|CHARACTER\s+SET)|(?:DEFAULT\s+)?COLLATE)\s*=\s*[^\s;,)]+",
    re.I,
)


@dataclass(slots=True)
class ServerCapabilities:
    dialect: str
    engines: set[str] = field(default_factory=set)
    charsets: set[str] = field(default_factory=set)
    collations: set[str] = field(default_factory=set)
    is_mariadb: bool = False
    max_allowed_packet: int = MYSQL_DEFAULT_MAX_ALLOWED_PACKET
    default_engine: str | None = None

    @property
    def is_mysql(self) -> bool:
        return self.dialect in {"mysql", "mariadb"}


def detect_capabilities(engine: Engine, max_allowed_packet: int | None = None) -> ServerCapabilities:
    name = engine.dialect.name
    if name == "sqlite":
        return ServerCapabilities(dialect="sqlite", max_allowed_packet=max_allowed_packet or SQLITE_MAX_ALLOWED_PACKET)

    capabilities = ServerCapabilities(dialect=name, default_engine="MyISAM")
    with engine.connect() as connection:
        for row in connection.execute(text("SHOW ENGINES")).mappings():
            support = str(row.get("Support") or "").upper()
            if support in {"YES", "DEFAULT"}:
                capabilities.engines.add(str(row["Engine"]).lower())
        for row in connection.execute(text("SHOW CHARACTER SET")).all():
            capabilities.charsets.add(str(row[0]).lower())
        for row in connection.execute(text("SHOW COLLATION")).all():
            capabilities.collations.add(str(row[0]).lower())
        version = str(connection.execute(text("SELECT VERSION()")).scalar_one())
        capabilities.is_mariadb = "mariadb" in version.lower()
        packet = connection.execute(text("SELECT @@session.max_allowed_packet")).scalar_one()
    capabilities.max_allowed_packet = max_allowed_packet or int(packet or MYSQL_DEFAULT_MAX_ALLOWED_PACKET)
    logger.info(
        "Destination server %s (%s): %d engines, %d charsets, %d collations, max_allowed_packet=%d",
        name,
        version,
        len(capabilities.engines),
        len(capabilities.charsets),
        len(capabilities.collations),
        capabilities.max_allowed_packet,
    )
    return capabilities


def prepare_create_table(sql: str, capabilities: ServerCapabilities, restore_collate: str = "") -> tuple[str, str]:
    """Adapt a CREATE TABLE to what the destination server supports.

    Returns the statement and the table engine it ends up with ("(?)" when
    none is declared).
    """
    sql = replace_last_occurrence("TYPE=", "ENGINE=", sql)
    if not capabilities.is_mysql:
        stripped = _SQLITE_TABLE_OPTIONS.sub("", sql)
        if stripped != sql:
            logger.info("Removed MySQL table options unsupported by %s", capabilities.dialect)
        return stripped.rstrip(), "(?)"

    table_engine = "(?)"
    engine_match = _ENGINE.search(sql)
    if engine_match is not None:
        table_engine = engine_match.group(1)
        if table_engine.lower() in capabilities.engines:
            if table_engine.lower() == "myisam":
                sql = re.sub(r"PAGE_CHECKSUM=\d\s?", "", sql, count=1)
        else:
            fallback = capabilities.default_engine or "MyISAM"
            logger.info("Requested table engine (%s) is not present - changing to %s", table_engine, fallback)
            sql = replace_last_occurrence(f"ENGINE={table_engine}", f"ENGINE={fallback}", sql)
            table_engine = fallback
            sql = re.sub(r"PAGE_CHECKSUM=\d\s?", "", sql, count=1)
            sql = re.sub(r"TRANSACTIONAL=\d\s?", "", sql, count=1)

    for match in list(_CHARSET.finditer(sql)):
        charset = match.group(2)
        if charset.lower() not in capabilities.charsets:
            logger.info("Requested character set (%s) is not present - removing", charset)
            sql = sql.replace(match.group(0), "")

    for collate in _COLLATE.findall(sql):
        if collate.lower() in capabilities.collations:
            continue
        pattern = re.compile(r"COLLATE(\s*=?\s*)" + re.escape(collate) + r"\b", re.I)
        if restore_collate:
            sql = pattern.sub(lambda found: f"COLLATE{found.group(1)}{restore_collate}", sql)
        else:
            sql = pattern.sub("", sql)
        logger.info("Requested table collation (%s) is not present - changing", collate)

    return sql, table_engine


def rewrite_set_names(sql: str, capabilities: ServerCapabilities) -> tuple[str, str | None]:
    match = _SET_NAMES.match(sql)
    if match is None:
        return sql, None
    charset = match.group(2)
    if capabilities.is_mysql and charset.lower() not in capabilities.charsets:
        logger.info("SET NAMES - requested charset %s not present, changing to utf8", charset)
        sql = sql[: match.start(2)] + "utf8" + sql[match.end(2) :]
    return sql, charset


def strip_view_definer(sql: str) -> str:
    rewritten = _VIEW_DEFINER.sub(r"\1SQL SECURITY INVOKER \2", sql, count=1)
    if rewritten != sql:
        logger.debug("Removed DEFINER from view definition")
    return rewritten


def strip_trigger_definer(sql: str) -> str:
    return _TRIGGER_DEFINER.sub(r"\1\2", sql, count=1)


def strip_routine_definer(sql: str) -> str:
    rewritten = _ROUTINE_DEFINER.sub(r"\1", sql, count=1)
    if _ROUTINE_SECURITY.search(rewritten):
        return _ROUTINE_SECURITY.sub("SQL SECURITY INVOKER", rewritten, count=1)
    position = _characteristics_start(rewritten)
    if position is None:
        return rewritten
    return rewritten[:position] + " SQL SECURITY INVOKER" + rewritten[position:]


def _characteristics_start(sql: str) -> int | None:
    """Offset just past a routine's parameter list and RETURNS clause."""
    opening = sql.find("(")
    if opening < 0:
        return None
    depth = 0
    for position in range(opening, len(sql)):
        char = sql[position]
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                end = position + 1
                returns = _RETURNS.match(sql, end)
                if returns is not None:
                    end = returns.end()
                return end
    return None

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from sqlalchemy import Engine
from sqlalchemy.exc import DBAPIError

from snapvault.exporter.dialect import backquote

logger = logging.getLogger(__name__)

PROBE_TABLE_PREFIX = "snapvault_tmp_"


@dataclass(slots=True)
class PermissionSet:
    create: bool = True
    drop: bool = True
    rename: bool = True
    lock: bool = True
    triggers: bool = False


def run_raw(engine: Engine, sql: str) -> None:
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT", no_parameters=True).exec_driver_sql(sql)


def _attempt(engine: Engine, sql: str) -> DBAPIError | None:
    try:
        run_raw(engine, sql)
    except DBAPIError as exc:
        return exc
    return None


def _trigger_sql(dialect_name: str, trigger: str, table: str) -> str:
    if dialect_name == "sqlite":
        return f"CREATE TRIGGER {backquote(trigger)} BEFORE INSERT ON {backquote(table)} BEGIN SELECT 1; END"
    return f"CREATE TRIGGER {backquote(trigger)} BEFORE INSERT ON {backquote(table)} FOR EACH ROW SET @sum = @sum + NEW.test"


def probe_permissions(engine: Engine) -> PermissionSet:
    """Find out what the restore user may do by exercising a throwaway table.

    CREATE failing implies DROP is unavailable too. DROP failing also rules
    out the rename-based swap, since the old table could never be removed.
    """
    dialect_name = engine.dialect.name
    permissions = PermissionSet()
    table = f"{PROBE_TABLE_PREFIX}{secrets.token_hex(6)}"
    renamed = f"{PROBE_TABLE_PREFIX}{secrets.token_hex(6)}"

    error = _attempt(engine, f"CREATE TABLE {backquote(table)} (test INT)")
    if error is not None:
        permissions.create = False
        permissions.drop = False
        logger.warning("Database user does not have CREATE permission; will restore by emptying tables (%s)", error.orig)
        return permissions

    if _attempt(engine, _trigger_sql(dialect_name, f"{table}_trigger", table)) is None:
        permissions.triggers = True

    error = _attempt(engine, f"ALTER TABLE {backquote(table)} RENAME TO {backquote(renamed)}")
    if error is not None:
        permissions.rename = False
        logger.info("Database user has no RENAME permission; restoration will be non-atomic (%s)", error.orig)
    else:
        table = renamed

    if dialect_name == "sqlite":
        permissions.lock = False
    else:
        with engine.connect() as connection:
            raw = connection.execution_options(isolation_level="AUTOCOMMIT", no_parameters=True)
            try:
                raw.exec_driver_sql(f"LOCK TABLES {backquote(table)} WRITE")
            except DBAPIError:
                permissions.lock = False
                logger.info("Database user has no LOCK permission; will not lock after CREATE")
            else:
                raw.exec_driver_sql("UNLOCK TABLES")

    error = _attempt(engine, f"DROP TABLE {backquote(table)}")
    if error is not None:
        permissions.drop = False
        permissions.rename = False
        logger.warning("Database user does not have DROP permission; will restore by emptying tables (%s)", error.orig)

    logger.info(
        "Database permissions: create=%s drop=%s rename=%s lock=%s triggers=%s",
        permissions.create,
        permissions.drop,
        permissions.rename,
        permissions.lock,
        permissions.triggers,
    )
    return permissions

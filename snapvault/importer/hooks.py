from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from sqlalchemy import Connection, text

from snapvault.exporter.dialect import backquote

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RestoredTableContext:
    connection: Connection
    table: str
    old_prefix: str
    new_prefix: str

    @property
    def unprefixed(self) -> str:
        if self.new_prefix and self.table.startswith(self.new_prefix):
            return self.table[len(self.new_prefix) :]
        return self.table

    @property
    def prefix_changed(self) -> bool:
        return self.old_prefix != self.new_prefix


RestoredTableHook = Callable[[RestoredTableContext], None]


def options_prefix_fixup(context: RestoredTableContext) -> None:
    """The user_roles option name embeds the table prefix."""
    if context.unprefixed != "options" or not context.prefix_changed:
        return
    logger.info("Table prefix has changed: changing options table field(s) accordingly (%s)", context.table)
    context.connection.execute(
        text(f"UPDATE {backquote(context.table)} SET option_name = :new_name WHERE option_name = :old_name"),
        {"new_name": f"{context.new_prefix}user_roles", "old_name": f"{context.old_prefix}user_roles"},
    )


def upload_path_fixup(context: RestoredTableContext) -> None:
    if context.unprefixed != "options":
        return
    value = context.connection.execute(
        text(f"SELECT option_value FROM {backquote(context.table)} WHERE option_name = 'upload_path'")
    ).scalar()
    if not value:
        return
    upload_path = str(value)
    is_absolute = upload_path.startswith("/") or (len(upload_path) > 2 and upload_path[1] == ":" and upload_path[2] in "/\\")
    if not is_absolute or Path(upload_path).exists():
        return
    logger.info("Uploads path (%s) does not exist - resetting", upload_path)
    context.connection.execute(
        text(f"UPDATE {backquote(context.table)} SET option_value = '' WHERE option_name = 'upload_path'")
    )


def usermeta_prefix_fixup(context: RestoredTableContext) -> None:
    """Capability and level keys in usermeta start with the table prefix."""
    if context.unprefixed != "usermeta" or not context.prefix_changed or not context.old_prefix:
        return
    escaped = context.old_prefix.replace("!", "!!").replace("%", "!%").replace("_", "!_")
    # Only the leading prefix is replaced.
    if context.connection.dialect.name == "sqlite":
        renamed = ":new_prefix || SUBSTR(meta_key, :offset)"
    else:
        renamed = "CONCAT(:new_prefix, SUBSTR(meta_key, :offset))"
    result = context.connection.execute(
        text(
            f"UPDATE {backquote(context.table)} SET meta_key = {renamed} "
            "WHERE meta_key LIKE :pattern ESCAPE '!'"
        ),
        {"new_prefix": context.new_prefix, "offset": len(context.old_prefix) + 1, "pattern": f"{escaped}%"},
    )
    logger.info("Usermeta table: %d meta_key value(s) moved to the new prefix", result.rowcount)


DEFAULT_HOOKS: tuple[RestoredTableHook, ...] = (options_prefix_fixup, upload_path_fixup, usermeta_prefix_fixup)

from __future__ import annotations

from sqlalchemy.exc import DBAPIError

from snapvault.core.errors import DatabaseConnectionLost, RetryableDatabaseError

MYSQL_CONNECTION_LOST_CODES = frozenset({2006, 2013, 2055})
MYSQL_DUPLICATE_KEY_CODE = 1062
SQLITE_DUPLICATE_NAMES = frozenset({"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"})


class DuplicateKeyError(RuntimeError):
    pass


def driver_error_code(exc: BaseException) -> int | None:
    orig = getattr(exc, "orig", exc)
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0]
    return None


def is_duplicate_key(exc: BaseException) -> bool:
    orig = getattr(exc, "orig", exc)
    if getattr(orig, "sqlite_errorname", None) in SQLITE_DUPLICATE_NAMES:
        return True
    return driver_error_code(exc) == MYSQL_DUPLICATE_KEY_CODE


def is_connection_lost(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return driver_error_code(exc) in MYSQL_CONNECTION_LOST_CODES


def classify_db_error(exc: BaseException) -> BaseException:
    """Map a driver error onto the engine's own error types.

    Lost connections become DatabaseConnectionLost and duplicate keys become
    DuplicateKeyError. Anything else is returned unchanged.
    """
    if is_connection_lost(exc):
        lost = DatabaseConnectionLost(f"Database connection lost: {getattr(exc, 'orig', exc)}")
        lost.__cause__ = exc
        return lost
    if is_duplicate_key(exc):
        duplicate = DuplicateKeyError(f"Duplicate entry: {getattr(exc, 'orig', exc)}")
        duplicate.__cause__ = exc
        return duplicate
    return exc


__all__ = [
    "DatabaseConnectionLost",
    "DuplicateKeyError",
    "RetryableDatabaseError",
    "classify_db_error",
    "driver_error_code",
    "is_connection_lost",
    "is_duplicate_key",
]

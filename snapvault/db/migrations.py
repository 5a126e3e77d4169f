from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_job_fail_on_resume(conn: Connection) -> None:
    if not _column_exists(conn, "jobs", "fail_on_resume"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN fail_on_resume BOOLEAN NOT NULL DEFAULT 0"))

    if not _column_exists(conn, "jobs", "useful_checkins"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN useful_checkins JSON NOT NULL DEFAULT '[]'"))


def _migration_0003_backup_set_sizes(conn: Connection) -> None:
    if not _column_exists(conn, "backup_sets", "sizes"):
        conn.execute(text("ALTER TABLE backup_sets ADD COLUMN sizes JSON NOT NULL DEFAULT '{}'"))

    if not _index_exists(conn, "backup_sets", "ix_backup_sets_status_timestamp"):
        conn.execute(text("CREATE INDEX ix_backup_sets_status_timestamp ON backup_sets (status, timestamp)"))


def _migration_0004_resumption_indexes(conn: Connection) -> None:
    if not _table_exists(conn, "scheduled_resumptions"):
        return

    if not _index_exists(conn, "scheduled_resumptions", "ix_scheduled_resumptions_status_run_at"):
        conn.execute(
            text("CREATE INDEX ix_scheduled_resumptions_status_run_at ON scheduled_resumptions (status, run_at)")
        )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="job_fail_on_resume", apply=_migration_0002_job_fail_on_resume),
    MigrationStep(version=3, name="backup_set_sizes", apply=_migration_0003_backup_set_sizes),
    MigrationStep(version=4, name="resumption_indexes", apply=_migration_0004_resumption_indexes),
)


def apply_migrations(engine: Engine) -> list[int]:
    applied: list[int] = []
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)
        done = {int(row[0]) for row in conn.execute(text("SELECT version FROM schema_migrations")).all()}
        for step in MIGRATIONS:
            if step.version in done:
                continue
            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations (version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.version)
    return applied

from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import create_engine, inspect, text

import snapvault.db.session as db_session_module
from snapvault.core.config import get_settings
from snapvault.db.init_db import initialize_database
from snapvault.db.migrations import MIGRATIONS, apply_migrations


def _column_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def test_apply_migrations_upgrades_legacy_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE jobs (
                    id VARCHAR(32) PRIMARY KEY,
                    kind VARCHAR(16) NOT NULL,
                    status VARCHAR(16) NOT NULL,
                    stage VARCHAR(16) NOT NULL,
                    file_base VARCHAR(255) NOT NULL,
                    resumption_count INTEGER NOT NULL DEFAULT 0,
                    resume_interval_seconds INTEGER NOT NULL DEFAULT 300,
                    task_data JSON NOT NULL,
                    run_times JSON NOT NULL,
                    runs_started JSON NOT NULL,
                    last_useful_checkin_at DATETIME,
                    last_error TEXT,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    finished_at DATETIME
                )
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE TABLE backup_sets (
                    job_id VARCHAR(32) PRIMARY KEY,
                    timestamp BIGINT NOT NULL UNIQUE,
                    file_base VARCHAR(255) NOT NULL,
                    components JSON NOT NULL,
                    total_size BIGINT NOT NULL DEFAULT 0,
                    status VARCHAR(16) NOT NULL,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE TABLE scheduled_resumptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id VARCHAR(32) NOT NULL,
                    resumption_no INTEGER NOT NULL,
                    run_at DATETIME NOT NULL,
                    status VARCHAR(16) NOT NULL,
                    claimed_at DATETIME,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )
        conn.execute(
            text(
                "INSERT INTO jobs(id, kind, status, stage, file_base, task_data, run_times, runs_started) "
                "VALUES ('abc123', 'backup', 'running', 'dbcreating', 'backup_x', '{}', '{}', '{}')"
            )
        )
        conn.execute(
            text(
                "INSERT INTO backup_sets(job_id, timestamp, file_base, components, status) "
                "VALUES ('abc123', 1700000000, 'backup_x', '{}', 'complete')"
            )
        )

    first = apply_migrations(engine)
    second = apply_migrations(engine)

    with engine.begin() as conn:
        job_columns = _column_names(conn, "jobs")
        set_columns = _column_names(conn, "backup_sets")
        set_indexes = _index_names(conn, "backup_sets")
        resumption_indexes = _index_names(conn, "scheduled_resumptions")
        job_row = conn.execute(text("SELECT fail_on_resume, useful_checkins FROM jobs")).one()
        sizes = conn.execute(text("SELECT sizes FROM backup_sets")).scalar_one()
        migration_versions = [
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        ]

    assert first == [step.version for step in MIGRATIONS]
    assert second == []
    assert {"fail_on_resume", "useful_checkins"}.issubset(job_columns)
    assert "sizes" in set_columns
    assert "ix_backup_sets_status_timestamp" in set_indexes
    assert "ix_scheduled_resumptions_status_run_at" in resumption_indexes
    assert job_row[0] == 0
    assert job_row[1] == "[]"
    assert sizes == "{}"
    assert migration_versions == [1, 2, 3, 4]


def test_apply_migrations_skips_steps_already_recorded(tmp_path: Path) -> None:
    db_path = tmp_path / "partial.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )
        conn.execute(
            text(
                "INSERT INTO schema_migrations(version, name) VALUES "
                "(1, 'baseline'), "
                "(2, 'job_fail_on_resume'), "
                "(3, 'backup_set_sizes')"
            )
        )

    applied = apply_migrations(engine)

    with engine.begin() as conn:
        migration_versions = [
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        ]

    assert applied == [4]
    assert migration_versions == [step.version for step in MIGRATIONS]


def test_initialize_database_creates_state_tables_once(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    for key in [name for name in os.environ if name.startswith("SNAPVAULT_")]:
        del os.environ[key]
    os.environ["SNAPVAULT_STATE_ROOT"] = state_root.as_posix()
    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None

    created = initialize_database()
    again = initialize_database()

    assert created == ["jobs", "locks", "scheduled_resumptions", "backup_sets", "schema_migrations"]
    assert again == []
    assert set(inspect(db_session_module.get_engine()).get_table_names()) == set(created)

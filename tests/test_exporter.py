from __future__ import annotations

import gzip
import os
import re
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import Engine, text

import snapvault.db.session as db_session_module
from snapvault.core.config import get_settings
from snapvault.db.init_db import initialize_database
from snapvault.db.models import JobKind
from snapvault.exporter.dialect import MySQLDialect, SourceDatabase, SQLiteDialect
from snapvault.exporter.encoding import encode_value
from snapvault.exporter.header import DumpHeaderInfo
from snapvault.exporter.service import DatabaseExporter, dump_filename
from snapvault.exporter.types import ColumnInfo, ColumnKind
from snapvault.jobs.service import JobStateService
from snapvault.scheduler.events import ProgressChannel, ProgressEvent, ProgressKind

FILE_BASE = "backup_2026-01-01-0000_example_0123456789ab"

ROW_LINE = re.compile(r"^(?:INSERT INTO `(?P<table>[^`]+)` VALUES )?\s?(?P<row>\(.*\))[,;]\s*$")


class SimulatedCrash(RuntimeError):
    pass


class CrashingSource(SourceDatabase):
    def __init__(self, engine: Engine, crash_after_rows: int):
        super().__init__(engine)
        self.crash_after_rows = crash_after_rows
        self.served = 0

    def fetch_page(self, *args: Any, **kwargs: Any) -> list[tuple[Any, ...]]:
        if self.served >= self.crash_after_rows:
            raise SimulatedCrash(f"process died after {self.served} rows")
        page = super().fetch_page(*args, **kwargs)
        self.served += len(page)
        return page


def setup_env(tmp_path: Path, **overrides: str) -> JobStateService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    for key in [name for name in os.environ if name.startswith("SNAPVAULT_")]:
        del os.environ[key]
    os.environ["SNAPVAULT_STATE_ROOT"] = state_root.as_posix()
    os.environ["SNAPVAULT_SITE_URL"] = "https://example.com"
    os.environ["SNAPVAULT_TABLE_PREFIX"] = "wp_"
    os.environ["SNAPVAULT_EXPORT_ROWS_PER_FETCH"] = overrides.get("rows_per_fetch", "1000")
    os.environ["SNAPVAULT_EXPORT_MAX_PAGES_PER_CALL"] = overrides.get("max_pages", "3")
    os.environ["SNAPVAULT_MAX_STATEMENT_BYTES"] = overrides.get("max_statement_bytes", str(16 * 1024 * 1024))

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return JobStateService(get_settings(), db_session_module.get_session_factory())


def build_source(tmp_path: Path, name: str = "site.sqlite3", posts: int = 10000) -> Engine:
    engine = db_session_module.create_database_engine(f"sqlite:///{(tmp_path / name).as_posix()}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE wp_posts (ID INTEGER PRIMARY KEY, post_title TEXT, payload BLOB)"))
        conn.execute(text("CREATE INDEX ix_wp_posts_title ON wp_posts (post_title)"))
        conn.execute(text("CREATE TABLE wp_options (option_name TEXT PRIMARY KEY, option_value TEXT)"))
        conn.execute(text("CREATE TABLE audit_log (id INTEGER PRIMARY KEY, message TEXT)"))
        conn.execute(text("CREATE VIEW wp_recent AS SELECT ID, post_title FROM wp_posts WHERE ID > 9990"))
        conn.execute(
            text("INSERT INTO wp_posts (ID, post_title, payload) VALUES (:id, :title, :payload)"),
            [{"id": index, "title": f"Post '{index}'", "payload": index.to_bytes(4, "big")} for index in range(1, posts + 1)],
        )
        conn.execute(
            text("INSERT INTO wp_options (option_name, option_value) VALUES (:name, :value)"),
            [
                {"name": "siteurl", "value": "https://example.com"},
                {"name": "home", "value": "https://example.com"},
                {"name": "blogname", "value": "It's a site"},
            ],
        )
        conn.execute(text("INSERT INTO audit_log (id, message) VALUES (1, 'not ours')"))
    return engine


def _dump_text(storage_root: Path) -> str:
    with gzip.open(storage_root / dump_filename(FILE_BASE), "rb") as handle:
        return handle.read().decode("utf-8")


def _row_literals(dump_text: str) -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    table = ""
    for line in dump_text.splitlines():
        match = ROW_LINE.match(line)
        if match is None:
            continue
        if match.group("table"):
            table = match.group("table")
        rows.append((table, match.group("row")))
    return rows


def _post_ids(dump_text: str) -> list[int]:
    return [int(row[1:].split(",", 1)[0]) for table, row in _row_literals(dump_text) if table == "wp_posts"]


def test_export_resumes_after_crash_without_gaps_or_duplicates(tmp_path: Path) -> None:
    jobs = setup_env(tmp_path)
    engine = build_source(tmp_path)
    job = jobs.create_job(JobKind.BACKUP, FILE_BASE)
    settings = get_settings()

    with pytest.raises(SimulatedCrash):
        DatabaseExporter(settings, CrashingSource(engine, crash_after_rows=4000), jobs).export(job.id)

    record = jobs.get_job(job.id).task_data["export"]
    assert record["tables"]["wp_posts"]["cursor"] == 3000
    assert record["tables"]["wp_posts"]["done"] is False

    filename = DatabaseExporter(settings, SourceDatabase(engine), jobs).export(job.id)

    assert filename == dump_filename(FILE_BASE)
    ids = _post_ids(_dump_text(settings.backup_dir))
    assert sorted(ids) == list(range(1, 10001))
    assert len(ids) == len(set(ids))
    leftovers = [path.name for path in settings.backup_dir.iterdir() if path.name != filename]
    assert leftovers == []


def test_interrupted_export_matches_uninterrupted_export(tmp_path: Path) -> None:
    jobs = setup_env(tmp_path, max_pages="1")
    engine = build_source(tmp_path, posts=2500)
    settings = get_settings()

    full_job = jobs.create_job(JobKind.BACKUP, FILE_BASE)
    DatabaseExporter(settings, SourceDatabase(engine), jobs).export(full_job.id)
    full_rows = sorted(_row_literals(_dump_text(settings.backup_dir)))
    (settings.backup_dir / dump_filename(FILE_BASE)).unlink()

    interrupted_job = jobs.create_job(JobKind.BACKUP, FILE_BASE)
    with pytest.raises(SimulatedCrash):
        DatabaseExporter(settings, CrashingSource(engine, crash_after_rows=1500), jobs).export(interrupted_job.id)
    assert jobs.get_job(interrupted_job.id).task_data["export"]["tables"]["wp_posts"]["cursor"] == 2000
    DatabaseExporter(settings, SourceDatabase(engine), jobs).export(interrupted_job.id)
    resumed_rows = sorted(_row_literals(_dump_text(settings.backup_dir)))

    assert resumed_rows == full_rows
    assert ("wp_options", "('blogname', 'It''s a site')") in resumed_rows


def test_export_header_views_and_skipped_tables(tmp_path: Path) -> None:
    jobs = setup_env(tmp_path, max_pages="200")
    engine = build_source(tmp_path, posts=20)
    settings = get_settings()
    job = jobs.create_job(JobKind.BACKUP, FILE_BASE)
    events: list[ProgressEvent] = []
    channel = ProgressChannel()
    channel.subscribe(events.append)

    DatabaseExporter(settings, SourceDatabase(engine), jobs, channel=channel).export(job.id)
    dump_text = _dump_text(settings.backup_dir)

    header = DumpHeaderInfo()
    for line in dump_text.splitlines():
        if line.startswith("# ") and not line.startswith("# Delete"):
            header.consume(line)
    assert dump_text.startswith("# Snapvault database backup\n")
    assert header.site_url == "https://example.com"
    assert header.table_prefix == "wp_"
    assert header.dialect == "sqlite"
    assert header.site_info_complete is True
    assert header.skipped_tables == ["audit_log"]
    assert "PRAGMA foreign_keys = OFF;" in dump_text
    assert dump_text.rstrip().endswith("PRAGMA foreign_keys = ON;")

    assert "INSERT INTO `audit_log`" not in dump_text
    assert "DROP VIEW IF EXISTS `wp_recent`;" in dump_text
    assert "INSERT INTO `wp_recent`" not in dump_text
    assert "CREATE INDEX ix_wp_posts_title ON wp_posts (post_title) ;" in dump_text
    assert dump_text.index("`wp_options`") < dump_text.index("`wp_posts`") < dump_text.index("`wp_recent`")

    kinds = [event.kind for event in events]
    assert kinds[-1] == ProgressKind.DUMP_STITCHED
    assert {event.entity for event in events if event.kind == ProgressKind.TABLE_DONE} == {
        "wp_options",
        "wp_posts",
        "wp_recent",
    }


def test_export_is_idempotent_once_stitched(tmp_path: Path) -> None:
    jobs = setup_env(tmp_path, max_pages="200")
    engine = build_source(tmp_path, posts=10)
    settings = get_settings()
    job = jobs.create_job(JobKind.BACKUP, FILE_BASE)

    DatabaseExporter(settings, SourceDatabase(engine), jobs).export(job.id)
    first_mtime = (settings.backup_dir / dump_filename(FILE_BASE)).stat().st_mtime_ns

    DatabaseExporter(settings, CrashingSource(engine, crash_after_rows=0), jobs).export(job.id)

    assert (settings.backup_dir / dump_filename(FILE_BASE)).stat().st_mtime_ns == first_mtime


def test_oversized_row_is_dropped_and_counted(tmp_path: Path) -> None:
    jobs = setup_env(tmp_path, max_pages="200", max_statement_bytes="200")
    engine = build_source(tmp_path, posts=3)
    with engine.begin() as conn:
        conn.execute(text("UPDATE wp_posts SET post_title = :title WHERE ID = 2"), {"title": "x" * 500})
    settings = get_settings()
    job = jobs.create_job(JobKind.BACKUP, FILE_BASE)

    DatabaseExporter(settings, SourceDatabase(engine), jobs).export(job.id)

    assert sorted(_post_ids(_dump_text(settings.backup_dir))) == [1, 3]
    task_data = jobs.get_job(job.id).task_data
    assert task_data["export_errors"] == 1
    assert task_data["export"]["tables"]["wp_posts"]["errors"] == 1


def test_encode_value_per_column_kind() -> None:
    mysql = MySQLDialect()
    sqlite = SQLiteDialect()
    text_column = ColumnInfo(name="post_title", kind=ColumnKind.TEXT)
    binary_column = ColumnInfo(name="payload", kind=ColumnKind.BINARY)

    assert encode_value("It's a\\path\n", text_column, mysql) == "'It\\'s a\\\\path\\n'"
    assert encode_value("It's", text_column, sqlite) == "'It''s'"
    assert encode_value(None, text_column, mysql) == "NULL"
    assert encode_value(b"\x00\x01", binary_column, mysql) == "X'0001'"
    assert encode_value(b"", binary_column, mysql) == "''"
    assert encode_value("ab", binary_column, sqlite) == "X'6162'"
    assert encode_value(None, ColumnInfo(name="n", kind=ColumnKind.INTEGER, default="0"), mysql) == "0"
    assert encode_value(None, ColumnInfo(name="n", kind=ColumnKind.INTEGER), mysql) == "NULL"
    assert encode_value(42, ColumnInfo(name="n", kind=ColumnKind.INTEGER), mysql) == "42"
    assert encode_value(5, ColumnInfo(name="flags", kind=ColumnKind.BIT, bit_width=4), mysql) == "b'0101'"

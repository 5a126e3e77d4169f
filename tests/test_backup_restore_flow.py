from __future__ import annotations

import gzip
import os
import random
import time
import zipfile
from pathlib import Path

from sqlalchemy import Engine, text

import snapvault.db.session as db_session_module
from snapvault.backup.service import BackupService
from snapvault.core.config import Settings, get_settings
from snapvault.db.init_db import initialize_database
from snapvault.db.models import JobStage, JobStatus
from snapvault.exporter.dialect import SourceDatabase
from snapvault.restore.service import RestoreService
from snapvault.scheduler.service import abort_sentinel_path
from snapvault.worker.pipeline import enqueue_backup, run_due_resumptions


class BrokenSource(SourceDatabase):
    def list_tables(self, prefix: str, all_tables: bool = False) -> tuple[list[tuple[str, bool]], list[str]]:
        raise RuntimeError("catalog unavailable")


def setup_env(tmp_path: Path, **overrides: str) -> Settings:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    content_root = tmp_path / "site" / "wp-content"
    for key in [name for name in os.environ if name.startswith("SNAPVAULT_")]:
        del os.environ[key]
    os.environ["SNAPVAULT_STATE_ROOT"] = state_root.as_posix()
    os.environ["SNAPVAULT_CONTENT_ROOT"] = content_root.as_posix()
    os.environ["SNAPVAULT_SOURCE_DATABASE_URL"] = f"sqlite:///{(tmp_path / 'site.sqlite3').as_posix()}"
    os.environ["SNAPVAULT_SITE_URL"] = "https://example.com"
    for key, value in overrides.items():
        os.environ[f"SNAPVAULT_{key.upper()}"] = value

    _build_site(tmp_path)
    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return get_settings()


def _build_site(tmp_path: Path) -> None:
    content = tmp_path / "site" / "wp-content"
    files = {
        "index.php": b"<?php // Silence is golden.\n",
        "plugins/akismet/akismet.php": b"<?php /* Plugin Name: Akismet */\n",
        "themes/twenty/style.css": b"/* Theme Name: Twenty */\n",
        "uploads/2026/01/photo.jpg": random.Random(7).randbytes(64 * 1024),
    }
    for relative, payload in files.items():
        path = content / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)

    engine = db_session_module.create_database_engine(f"sqlite:///{(tmp_path / 'site.sqlite3').as_posix()}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE wp_options (option_id INTEGER PRIMARY KEY, option_name TEXT UNIQUE, option_value TEXT)"))
        conn.execute(text("CREATE TABLE wp_posts (ID INTEGER PRIMARY KEY, post_title TEXT)"))
        conn.execute(
            text("INSERT INTO wp_options (option_id, option_name, option_value) VALUES (:id, :name, :value)"),
            [{"id": 1, "name": "blogname", "value": "Example"}, {"id": 2, "name": "siteurl", "value": "https://example.com"}],
        )
        conn.execute(
            text("INSERT INTO wp_posts (ID, post_title) VALUES (:id, :title)"),
            [{"id": index, "title": f"Post {index}"} for index in range(1, 51)],
        )
    engine.dispose()


def _source_engine(settings: Settings) -> Engine:
    assert settings.source_database_url is not None
    return db_session_module.create_database_engine(settings.source_database_url)


def _services(settings: Settings, engine: Engine) -> tuple[BackupService, RestoreService]:
    session_factory = db_session_module.get_session_factory()
    backup = BackupService(settings, session_factory, source=SourceDatabase(engine))
    restore = RestoreService(settings, session_factory, target_engine=engine)
    return backup, restore


def _members(storage: Path, names: list[str]) -> list[str]:
    members: list[str] = []
    for name in names:
        with zipfile.ZipFile(storage / name) as archive:
            members.extend(info.filename for info in archive.infolist())
    return members


def _age_temp_files(storage: Path, seconds: int = 120) -> None:
    stamp = time.time() - seconds
    for path in storage.glob("*.tmp"):
        os.utime(path, (stamp, stamp))


def test_backup_then_restore_round_trip(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    engine = _source_engine(settings)
    backup, restore = _services(settings, engine)
    content = tmp_path / "site" / "wp-content"

    job = backup.start_backup()
    assert job.file_base.startswith("backup_") and job.file_base.endswith(f"_examplecom_{job.id}")
    finished = backup.resume(0, job.id)

    assert finished.status == JobStatus.COMPLETED
    assert finished.stage == JobStage.FINISHED
    backup_set = backup.history.get(job_id=job.id)
    assert backup_set is not None
    assert set(backup_set.components) == {"db", "plugins", "themes", "uploads", "others"}
    assert backup_set.components["db"] == [f"{job.file_base}-db.gz"]
    assert _members(settings.backup_dir, backup_set.components["plugins"]) == ["plugins/akismet/akismet.php"]
    assert _members(settings.backup_dir, backup_set.components["others"]) == ["wp-content/index.php"]
    with gzip.open(settings.backup_dir / backup_set.components["db"][0], "rt", encoding="utf-8") as handle:
        dump = handle.read()
    assert "INSERT INTO `wp_posts` VALUES" in dump
    assert not list(settings.backup_dir.glob(f"{job.file_base}-db-table-*"))
    assert backup.queue.next_pending(job.id) is None

    with engine.begin() as conn:
        conn.execute(text("UPDATE wp_options SET option_value = 'Changed' WHERE option_name = 'blogname'"))
        conn.execute(text("DELETE FROM wp_posts WHERE ID > 10"))
    (content / "plugins" / "akismet" / "akismet.php").unlink()
    (content / "index.php").write_bytes(b"tampered")

    restore_job = restore.start_restore(job.id)
    assert restore_job.file_base == job.file_base
    restored = restore.resume(0, restore_job.id)

    assert restored.status == JobStatus.COMPLETED, restored.last_error
    with engine.connect() as conn:
        assert conn.execute(text("SELECT option_value FROM wp_options WHERE option_name = 'blogname'")).scalar_one() == "Example"
        assert conn.execute(text("SELECT COUNT(*) FROM wp_posts")).scalar_one() == 50
    assert (content / "plugins" / "akismet" / "akismet.php").read_bytes() == b"<?php /* Plugin Name: Akismet */\n"
    assert (content / "index.php").read_bytes() == b"<?php // Silence is golden.\n"
    assert set(restored.task_data["parts_done"]) == {"plugins", "themes", "uploads", "others"}
    assert restored.task_data["restore"]["last_processed_table"] == "wp_posts"
    engine.dispose()


def test_backup_completes_when_every_checkpoint_yields(tmp_path: Path) -> None:
    settings = setup_env(tmp_path, invocation_budget_seconds="0.000001", useless_resumption_limit="1000")
    engine = _source_engine(settings)
    backup, _restore = _services(settings, engine)

    job = backup.start_backup()
    resumption = 0
    invocations = 0
    while invocations < 100:
        job = backup.resume(resumption, job.id)
        invocations += 1
        if job.is_terminal:
            break
        _age_temp_files(settings.backup_dir)
        # Skipping a number keeps the overlap check away from the invocation that just ended.
        resumption += 2

    assert job.status == JobStatus.COMPLETED, job.last_error
    assert invocations > 3
    assert len(job.useful_checkins) >= 3
    backup_set = backup.history.get(job_id=job.id)
    assert backup_set is not None
    members = [
        member
        for entity, names in backup_set.components.items()
        if entity != "db"
        for member in _members(settings.backup_dir, names)
    ]
    assert sorted(members) == sorted(
        [
            "plugins/akismet/akismet.php",
            "themes/twenty/style.css",
            "uploads/2026/01/photo.jpg",
            "wp-content/index.php",
        ]
    )
    assert not list(settings.backup_dir.glob("*.tmp"))
    engine.dispose()


def test_abort_request_stops_job_and_removes_partial_files(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    engine = _source_engine(settings)
    backup, _restore = _services(settings, engine)

    job = backup.start_backup(["uploads"])
    partial = settings.backup_dir / f"{job.file_base}-uploads.zip.tmp"
    partial.write_bytes(b"partial")
    sentinel = backup.request_abort(job.id)
    assert sentinel == abort_sentinel_path(settings.backup_dir, job.id)

    aborted = backup.resume(0, job.id)

    assert aborted.status == JobStatus.ABORTED
    assert aborted.finished_at is not None
    assert not partial.exists()
    assert not sentinel.exists()
    assert backup.queue.next_pending(job.id) is None
    assert backup.resume(1, job.id).status == JobStatus.ABORTED
    engine.dispose()


def test_failed_backup_records_error_and_cleans_up(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    engine = _source_engine(settings)
    backup = BackupService(settings, db_session_module.get_session_factory(), source=BrokenSource(engine))

    job = backup.start_backup(["themes"])
    stray = settings.backup_dir / f"{job.file_base}-db-table-wp_posts.table.tmp.gz"
    stray.write_bytes(b"stray")

    failed = backup.resume(0, job.id)

    assert failed.status == JobStatus.FAILED
    assert failed.last_error == "RuntimeError: catalog unavailable"
    assert not stray.exists()
    assert backup.history.get(job_id=job.id) is None
    assert backup.queue.next_pending(job.id) is None
    assert (settings.backup_dir / f"log.{job.id}.txt").exists()
    engine.dispose()


def test_resumption_skips_when_lock_is_held(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    engine = _source_engine(settings)
    backup, _restore = _services(settings, engine)

    job = backup.start_backup(["themes"], include_db=False)
    assert backup.semaphore.lock(backup.lock_name(job.id)) is True

    skipped = backup.resume(1, job.id)

    assert skipped.status == JobStatus.PENDING
    assert skipped.runs_started == {}
    engine.dispose()


def test_recent_check_in_of_previous_resumption_defers_to_it(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    engine = _source_engine(settings)
    backup, _restore = _services(settings, engine)

    job = backup.start_backup(["themes"], include_db=False)
    backup.jobs.mark_invocation_started(job.id, 0, time.time() - 5)
    backup.jobs.record_run_time(job.id, 0, 4.0)

    deferred = backup.resume(1, job.id)

    assert deferred.status == JobStatus.RUNNING
    assert deferred.stage == JobStage.BEGUN
    assert "1" not in deferred.runs_started
    pending = backup.queue.next_pending(job.id)
    assert pending is not None
    assert pending.resumption_no == 2
    assert deferred.resume_interval_seconds == settings.resume_interval_seconds + 120
    engine.dispose()


def test_stalled_job_fails_after_warning(tmp_path: Path) -> None:
    settings = setup_env(tmp_path, useless_resumption_limit="3")
    engine = _source_engine(settings)
    backup, _restore = _services(settings, engine)

    job = backup.start_backup(["themes"], include_db=False)
    backup.jobs.set_fail_on_resume(job.id, True)

    stalled = backup.resume(5, job.id)

    assert stalled.status == JobStatus.FAILED
    assert stalled.last_error == "The job made no progress over its last resumptions"
    engine.dispose()


def test_worker_runs_due_resumptions(tmp_path: Path) -> None:
    setup_env(tmp_path)

    job_id = enqueue_backup(["plugins", "themes"])
    results = run_due_resumptions()

    assert [(job.id, job.status) for job in results] == [(job_id, JobStatus.COMPLETED)]
    assert run_due_resumptions() == []

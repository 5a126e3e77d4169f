from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

import snapvault.db.session as db_session_module
from snapvault.core.config import get_settings
from snapvault.db.init_db import initialize_database
from snapvault.history.service import HistoryService, parse_backup_filename


def setup_env(tmp_path: Path) -> HistoryService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    for key in [name for name in os.environ if name.startswith("SNAPVAULT_")]:
        del os.environ[key]
    os.environ["SNAPVAULT_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return HistoryService(get_settings(), db_session_module.get_session_factory())


def _touch(service: HistoryService, name: str, size: int = 10) -> str:
    (service.storage_root / name).write_bytes(b"x" * size)
    return name


def test_parse_backup_filename() -> None:
    parsed = parse_backup_filename("backup_2026-03-04-0506_examplecom_0123456789ab-uploads3.zip")

    assert parsed is not None
    assert parsed.file_base == "backup_2026-03-04-0506_examplecom_0123456789ab"
    assert parsed.nonce == "0123456789ab"
    assert parsed.component == "uploads"
    assert parsed.index == 2
    assert parsed.timestamp == int(datetime(2026, 3, 4, 5, 6, tzinfo=timezone.utc).timestamp())
    assert parse_backup_filename("backup_2026-03-04-0506_examplecom_0123456789ab-db-table-wp_posts.table.gz") is None
    assert parse_backup_filename("log.0123456789ab.txt") is None


def test_save_rejects_taken_timestamp_and_lists_newest_first(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    base_a = "backup_2026-01-01-0000_site_aaaaaaaaaaaa"
    base_b = "backup_2026-01-02-0000_site_bbbbbbbbbbbb"

    assert service.save("aaaaaaaaaaaa", {"db": [f"{base_a}-db.gz"]}, {f"{base_a}-db.gz": 5}, 100) is True
    assert service.save("bbbbbbbbbbbb", {"db": [f"{base_b}-db.gz"]}, {f"{base_b}-db.gz": 7}, 100) is False
    assert service.save("bbbbbbbbbbbb", {"db": [f"{base_b}-db.gz"]}, {f"{base_b}-db.gz": 7}, 101) is True

    items = service.list()
    assert [item.job_id for item in items] == ["bbbbbbbbbbbb", "aaaaaaaaaaaa"]
    assert items[0].file_base == base_b
    assert items[0].total_size == 7
    assert service.get(timestamp=100).job_id == "aaaaaaaaaaaa"  # type: ignore[union-attr]
    with pytest.raises(ValueError):
        service.get()


def test_delete_removes_files_and_row(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    base = "backup_2026-01-01-0000_site_aaaaaaaaaaaa"
    db = _touch(service, f"{base}-db.gz")
    uploads = _touch(service, f"{base}-uploads.zip")
    unrelated = _touch(service, "backup_2026-01-01-0000_site_cccccccccccc-db.gz")
    service.save("aaaaaaaaaaaa", {"db": [db], "uploads": [uploads]}, {db: 10, uploads: 10}, 200)

    assert service.delete(200) is True
    assert service.delete(200) is False

    assert not (service.storage_root / db).exists()
    assert not (service.storage_root / uploads).exists()
    assert (service.storage_root / unrelated).exists()
    assert service.get(job_id="aaaaaaaaaaaa") is None


def test_rebuild_reconciles_index_with_storage(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    kept_base = "backup_2026-01-01-0000_site_aaaaaaaaaaaa"
    found_base = "backup_2026-01-01-0000_site_bbbbbbbbbbbb"
    gone_base = "backup_2025-12-31-0000_site_cccccccccccc"
    active_base = "backup_2026-01-03-0000_site_dddddddddddd"

    kept_db = _touch(service, f"{kept_base}-db.gz")
    service.save("aaaaaaaaaaaa", {"db": [kept_db]}, {kept_db: 10}, 1767225600)
    service.save("cccccccccccc", {"db": [f"{gone_base}-db.gz"]}, {f"{gone_base}-db.gz": 10}, 1767139200)
    _touch(service, f"{kept_base}-uploads.zip", 20)
    _touch(service, f"{found_base}-plugins.zip", 30)
    _touch(service, f"{found_base}-plugins2.zip", 40)
    _touch(service, f"{active_base}-db.gz")

    rebuilt = service.rebuild([active_base])

    assert set(rebuilt) == {"aaaaaaaaaaaa", "bbbbbbbbbbbb"}
    kept = rebuilt["aaaaaaaaaaaa"]
    assert kept.components == {"db": [kept_db], "uploads": [f"{kept_base}-uploads.zip"]}
    assert kept.total_size == 30
    assert kept.timestamp == 1767225600
    found = rebuilt["bbbbbbbbbbbb"]
    assert found.components == {"plugins": [f"{found_base}-plugins.zip", f"{found_base}-plugins2.zip"]}
    assert found.timestamp == 1767225601
    assert service.get(job_id="cccccccccccc") is None

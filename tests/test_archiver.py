from __future__ import annotations

import errno
import logging
import os
import random
import time
import zipfile
from pathlib import Path

import pytest

from snapvault.archiver.builder import ArchiveBuilder, part_filename, part_index_from_name
from snapvault.archiver.cleanup import cleanup_stale_temp_files
from snapvault.archiver.enumerate import collect_queue
from snapvault.archiver.exclusions import ExclusionKind, ExclusionRules
from snapvault.core.config import Settings, get_settings
from snapvault.core.errors import DiskWriteError
from snapvault.scheduler.events import ProgressChannel, ProgressEvent, ProgressKind

BASE = "backup_2026-01-01-0000_example_0123456789ab"


class Interrupted(RuntimeError):
    pass


def setup_env(tmp_path: Path, **overrides: str) -> Settings:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    for key in [name for name in os.environ if name.startswith("SNAPVAULT_")]:
        del os.environ[key]
    os.environ["SNAPVAULT_STATE_ROOT"] = state_root.as_posix()
    os.environ["SNAPVAULT_MAX_PART_BYTES"] = overrides.get("max_part_bytes", str(1024 * 1024))
    os.environ["SNAPVAULT_COMMIT_INTERVAL_SECONDS"] = "600"
    os.environ["SNAPVAULT_BATCH_MAX_FILES"] = overrides.get("batch_max_files", "500")
    os.environ["SNAPVAULT_ENUMERATION_CACHE_THRESHOLD_SECONDS"] = overrides.get("cache_threshold", "20")

    get_settings.cache_clear()
    return get_settings()


def _write_random(path: Path, random_bytes: int, zero_bytes: int = 0, seed: int = 0) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(random.Random(seed).randbytes(random_bytes) + b"\x00" * zero_bytes)


def _part_members(paths: list[Path]) -> list[str]:
    names: list[str] = []
    for path in paths:
        with zipfile.ZipFile(path) as archive:
            names.extend(info.filename for info in archive.infolist())
    return names


def test_part_filenames_round_trip() -> None:
    assert part_filename(BASE, "uploads", 0) == f"{BASE}-uploads.zip"
    assert part_filename(BASE, "uploads", 2) == f"{BASE}-uploads3.zip"
    assert part_index_from_name(BASE, "uploads", f"{BASE}-uploads3.zip.tmp") == (2, True)
    assert part_index_from_name(BASE, "uploads", f"{BASE}-plugins.zip") is None


def test_five_partly_compressible_files_make_two_parts(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    uploads = tmp_path / "wp-content" / "uploads"
    for index in range(5):
        _write_random(uploads / f"file{index}.bin", 300 * 1024, 100 * 1024, seed=index)

    finished = ArchiveBuilder(settings).build("uploads", [uploads], BASE)

    assert finished == {0: f"{BASE}-uploads.zip", 1: f"{BASE}-uploads2.zip"}
    first = _part_members([settings.backup_dir / finished[0]])
    second = _part_members([settings.backup_dir / finished[1]])
    assert first == ["uploads/file0.bin", "uploads/file1.bin", "uploads/file2.bin"]
    assert second == ["uploads/file3.bin", "uploads/file4.bin"]
    assert (settings.backup_dir / finished[0]).stat().st_size <= settings.max_part_bytes


def test_parts_stay_under_cap_unless_holding_one_oversized_file(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    uploads = tmp_path / "wp-content" / "uploads"
    for index, name in enumerate(("a1.bin", "a2.bin", "a3.bin", "c1.bin", "c2.bin")):
        _write_random(uploads / name, 200 * 1024, seed=index)
    _write_random(uploads / "b_big.bin", 1536 * 1024, seed=99)

    builder = ArchiveBuilder(settings)
    builder.build("uploads", [uploads], BASE)

    assert len(builder.parts) == 3
    for part in builder.parts:
        assert part.size_bytes <= settings.max_part_bytes or len(part.manifest) == 1
    oversized = [part for part in builder.parts if part.size_bytes > settings.max_part_bytes]
    assert [list(part.manifest) for part in oversized] == [["uploads/b_big.bin"]]


def test_interrupted_build_resumes_without_duplicates(tmp_path: Path) -> None:
    settings = setup_env(tmp_path, max_part_bytes="100000", batch_max_files="2")
    plugins = tmp_path / "wp-content" / "plugins"
    expected = set()
    for index in range(12):
        _write_random(plugins / f"plugin{index:02d}" / "main.php", 20 * 1024, seed=index)
        expected.add(f"plugins/plugin{index:02d}/main.php")

    batches: list[ProgressEvent] = []

    def interrupt(event: ProgressEvent) -> None:
        if event.kind == ProgressKind.ARCHIVE_BATCH:
            batches.append(event)
            if len(batches) == 2:
                raise Interrupted("invocation ended")

    channel = ProgressChannel()
    channel.subscribe(interrupt)
    with pytest.raises(Interrupted):
        ArchiveBuilder(settings, channel=channel).build("plugins", [plugins], BASE)
    assert list(settings.backup_dir.glob(f"{BASE}-plugins*.zip*"))

    finished = ArchiveBuilder(settings).build("plugins", [plugins], BASE)

    paths = [settings.backup_dir / name for name in finished.values()]
    names = _part_members(paths)
    assert len(names) == len(set(names))
    assert set(names) == expected
    assert sorted(finished) == list(range(len(finished)))
    assert not list(settings.backup_dir.glob("*.tmp"))


def test_incremental_cutoff_leaves_old_files_out(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    themes = tmp_path / "wp-content" / "themes"
    _write_random(themes / "old" / "style.css", 1024, seed=1)
    _write_random(themes / "new" / "style.css", 1024, seed=2)
    os.utime(themes / "old" / "style.css", (1000.0, 1000.0))
    cutoff = time.time() - 60

    builder = ArchiveBuilder(settings)
    finished = builder.build("themes", [themes], BASE, cutoff=cutoff)

    assert _part_members([settings.backup_dir / finished[0]]) == ["themes/new/style.css"]
    assert [entry.stored_as for entry in builder.unchanged] == ["themes/old/style.css"]


def test_enumeration_cache_survives_interruption_and_is_removed_after(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    settings = setup_env(tmp_path, cache_threshold="0.000000001", batch_max_files="1")
    uploads = tmp_path / "wp-content" / "uploads"
    for index in range(4):
        _write_random(uploads / f"2026/0{index + 1}/photo.jpg", 4096, seed=index)
    cache_path = settings.backup_dir / f"{BASE}-cachelist-uploads.json.gz"

    def interrupt(event: ProgressEvent) -> None:
        raise Interrupted("invocation ended")

    channel = ProgressChannel()
    channel.subscribe(interrupt)
    with pytest.raises(Interrupted):
        ArchiveBuilder(settings, channel=channel).build("uploads", [uploads], BASE)
    assert cache_path.exists()

    with caplog.at_level(logging.INFO, logger="snapvault.archiver.cache"):
        ArchiveBuilder(settings).build("uploads", [uploads], BASE)

    assert any("Using enumeration cache" in record.getMessage() for record in caplog.records)
    assert not cache_path.exists()


def test_exclusion_rules_precedence() -> None:
    rules = ExclusionRules.parse(["cache", "ext:log", "prefix:tmp", "backup*", "*backups", "2024/*draft*"])

    assert rules.match("cache", is_dir=True) is ExclusionKind.PATH
    assert rules.match("debug.LOG") is ExclusionKind.EXTENSION
    assert rules.match("logs.log", is_dir=True) is None
    assert rules.match("tmpfile.txt") is ExclusionKind.PREFIX
    assert rules.match("backupbuddy", is_dir=True) is ExclusionKind.WILDCARD
    assert rules.match("old-backups", is_dir=True) is ExclusionKind.WILDCARD
    assert rules.match("2024/my-draft-post.jpg") is ExclusionKind.WILDCARD
    assert rules.match("2025/my-draft-post.jpg") is None
    assert rules.match("nested/cache") is None


def test_enumeration_skips_excluded_marked_and_storage_directories(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    content = tmp_path / "wp-content"
    _write_random(content / "index.php", 10)
    _write_random(content / "cache" / "page.html", 10)
    _write_random(content / "private" / "secret.txt", 10)
    (content / "private" / ".donotbackup").touch()
    _write_random(content / "snapshots" / "old.zip", 10)
    _write_random(content / "mu-plugins" / "loader.php", 10)

    rules = ExclusionRules.parse(["cache"])
    result = collect_queue([content], rules, storage_root=content / "snapshots")

    assert [entry.stored_as for entry in result.entries] == ["wp-content/index.php", "wp-content/mu-plugins/loader.php"]
    assert settings.backup_dir.exists()


def test_enumeration_survives_symlink_loop(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    setup_env(tmp_path)
    uploads = tmp_path / "wp-content" / "uploads"
    _write_random(uploads / "a" / "image.png", 10)
    (uploads / "a" / "loop").symlink_to(uploads / "a", target_is_directory=True)

    with caplog.at_level(logging.WARNING, logger="snapvault.archiver.enumerate"):
        result = collect_queue([uploads])

    assert [entry.stored_as for entry in result.entries] == ["uploads/a/image.png"]
    assert any("Symlink loop" in record.getMessage() for record in caplog.records)


def test_cleanup_removes_only_stale_unowned_temp_files(tmp_path: Path) -> None:
    storage = tmp_path / "backups"
    storage.mkdir()
    now = time.time()
    stale = storage / "backup_old-uploads.zip.tmp"
    active = storage / "backup_active-db-table-wp_posts.table.tmp.gz"
    young = storage / "backup_young-plugins.zip.tmp"
    finished = storage / "backup_old-uploads.zip"
    for path in (stale, active, young, finished):
        path.write_bytes(b"x")
    for path in (stale, active, finished):
        os.utime(path, (now - 7200, now - 7200))

    removed = cleanup_stale_temp_files(storage, 3600, ["backup_active"], now=now)

    assert removed == [stale]
    assert active.exists() and young.exists() and finished.exists()


def test_file_grown_after_archiving_is_not_written_again(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    settings = setup_env(tmp_path, max_part_bytes="100000", batch_max_files="2")
    plugins = tmp_path / "wp-content" / "plugins"
    for index in range(8):
        _write_random(plugins / f"p{index:02d}" / "main.php", 20 * 1024, seed=index)

    batches: list[ProgressEvent] = []

    def interrupt(event: ProgressEvent) -> None:
        if event.kind == ProgressKind.ARCHIVE_BATCH:
            batches.append(event)
            if len(batches) == 2:
                raise Interrupted("invocation ended")

    channel = ProgressChannel()
    channel.subscribe(interrupt)
    with pytest.raises(Interrupted):
        ArchiveBuilder(settings, channel=channel).build("plugins", [plugins], BASE)
    with (plugins / "p00" / "main.php").open("ab") as handle:
        handle.write(b"grown")

    with caplog.at_level(logging.INFO, logger="snapvault.archiver.builder"):
        finished = ArchiveBuilder(settings).build("plugins", [plugins], BASE)

    names = _part_members([settings.backup_dir / name for name in finished.values()])
    assert sorted(names) == sorted(f"plugins/p{index:02d}/main.php" for index in range(8))
    assert len(names) == len(set(names))
    assert any("changed size since it was archived" in record.getMessage() for record in caplog.records)


def test_file_removed_after_enumeration_is_skipped(tmp_path: Path) -> None:
    settings = setup_env(tmp_path, batch_max_files="2")
    plugins = tmp_path / "wp-content" / "plugins"
    for index in range(6):
        _write_random(plugins / f"p{index:02d}" / "main.php", 1024, seed=index)
    doomed = plugins / "p05" / "main.php"

    def remove_late_file(event: ProgressEvent) -> None:
        if event.kind == ProgressKind.ARCHIVE_BATCH and doomed.exists():
            doomed.unlink()

    channel = ProgressChannel()
    channel.subscribe(remove_late_file)
    builder = ArchiveBuilder(settings, channel=channel)
    finished = builder.build("plugins", [plugins], BASE)

    names = _part_members([settings.backup_dir / name for name in finished.values()])
    assert builder.skipped == ["plugins/p05/main.php"]
    assert sorted(names) == [f"plugins/p{index:02d}/main.php" for index in range(5)]


@pytest.mark.parametrize("code", [errno.ENOSPC, errno.EIO, errno.EDQUOT])
def test_disk_write_failures_raise_disk_write_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    code: int,
) -> None:
    settings = setup_env(tmp_path)
    themes = tmp_path / "wp-content" / "themes"
    _write_random(themes / "twenty" / "style.css", 1024)

    def failing_write(self: zipfile.ZipFile, *args: object, **kwargs: object) -> None:
        raise OSError(code, os.strerror(code))

    monkeypatch.setattr(zipfile.ZipFile, "write", failing_write)

    with pytest.raises(DiskWriteError):
        ArchiveBuilder(settings).build("themes", [themes], BASE)


def test_other_write_failures_propagate_unchanged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = setup_env(tmp_path)
    themes = tmp_path / "wp-content" / "themes"
    _write_random(themes / "twenty" / "style.css", 1024)

    def failing_write(self: zipfile.ZipFile, *args: object, **kwargs: object) -> None:
        raise OSError(errno.ENAMETOOLONG, os.strerror(errno.ENAMETOOLONG))

    monkeypatch.setattr(zipfile.ZipFile, "write", failing_write)

    with pytest.raises(OSError) as raised:
        ArchiveBuilder(settings).build("themes", [themes], BASE)
    assert not isinstance(raised.value, DiskWriteError)

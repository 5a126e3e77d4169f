from __future__ import annotations

import logging
import os
import shutil
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Sequence

from snapvault.core.config import Settings
from snapvault.core.path_safety import PathSafetyError, resolve_under_root, validate_archive_member
from snapvault.history.types import BackupSetSnapshot
from snapvault.scheduler.events import InvocationGuard, ProgressChannel, ProgressEvent, ProgressKind

logger = logging.getLogger(__name__)

COPY_CHUNK_BYTES = 1024 * 1024

PartRestoredListener = Callable[[str, str], None]


class FilesRestoreError(RuntimeError):
    pass


@dataclass(slots=True)
class FilesRestoreStats:
    parts: list[str] = field(default_factory=list)
    files: int = 0
    bytes_written: int = 0
    rejected: list[str] = field(default_factory=list)


class FilesRestorer:
    """Unpacks an entity's zip parts over its live roots.

    Members are stored relative to the parent of the root they came from, so
    the first path component picks the destination root. Existing files are
    overwritten; files absent from the backup are left in place.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        channel: ProgressChannel | None = None,
        guard: InvocationGuard | None = None,
        on_part_restored: PartRestoredListener | None = None,
    ):
        self._settings = settings
        self._channel = channel
        self._guard = guard
        self._on_part_restored = on_part_restored

    @property
    def storage_root(self) -> Path:
        return self._settings.backup_dir

    def restore(
        self,
        backup_set: BackupSetSnapshot,
        entity: str,
        roots: Sequence[Path],
        done_parts: Iterable[str] = (),
    ) -> FilesRestoreStats:
        if not roots:
            raise FilesRestoreError(f"No destination configured for {entity}")
        parts = backup_set.components.get(entity) or []
        if not parts:
            raise FilesRestoreError(f"Backup set {backup_set.job_id} has no {entity} archive")

        skip = set(done_parts)
        by_name = {Path(root).name: Path(root) for root in roots}
        stats = FilesRestoreStats()
        for part_name in parts:
            if part_name in skip:
                logger.info("Skipping %s: already restored on a prior run", part_name)
                continue
            if self._guard is not None:
                self._guard.check_abort()
            path = self.storage_root / part_name
            if not path.exists():
                raise FilesRestoreError(f"Archive part is missing: {part_name}")
            files, written = self._extract(path, by_name, Path(roots[0]), stats)
            stats.parts.append(part_name)
            stats.files += files
            stats.bytes_written += written
            logger.info("Restored %s: %d files (%.1fKB)", part_name, files, written / 1024)
            if self._on_part_restored is not None:
                self._on_part_restored(entity, part_name)
            if self._channel is not None:
                self._channel.emit(
                    ProgressEvent(
                        kind=ProgressKind.FILES_RESTORED,
                        entity=entity,
                        detail={"part": part_name, "files": files, "bytes": written},
                    )
                )
        return stats

    def _destination(self, member: PurePosixPath, by_name: dict[str, Path], default_root: Path) -> Path:
        head, rest = member.parts[0], member.parts[1:]
        root = by_name.get(head)
        if root is None:
            root = default_root
            rest = member.parts
        if not rest:
            return root
        return resolve_under_root(root, "/".join(rest))

    def _extract(
        self,
        path: Path,
        by_name: dict[str, Path],
        default_root: Path,
        stats: FilesRestoreStats,
    ) -> tuple[int, int]:
        files = 0
        written = 0
        try:
            archive = zipfile.ZipFile(path, "r")
        except zipfile.BadZipFile as exc:
            raise FilesRestoreError(f"Archive part {path.name} is unreadable: {exc}") from exc
        with archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                try:
                    member = validate_archive_member(info.filename)
                    target = self._destination(member, by_name, default_root)
                except PathSafetyError as exc:
                    logger.error("Rejected archive member %s: %s", info.filename, exc)
                    stats.rejected.append(info.filename)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info, "r") as source, target.open("wb") as output:
                    shutil.copyfileobj(source, output, COPY_CHUNK_BYTES)
                modified = time.mktime(info.date_time + (0, 0, -1))
                os.utime(target, (modified, modified))
                files += 1
                written += info.file_size
        return files, written

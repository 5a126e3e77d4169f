from __future__ import annotations

import errno
import logging
import re
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import psutil

from snapvault.archiver.cache import CACHEABLE_ENTITIES, EnumerationCache
from snapvault.archiver.enumerate import collect_queue
from snapvault.archiver.exclusions import ExclusionRules
from snapvault.archiver.types import ArchivePart, EnumerationResult, FileQueueEntry
from snapvault.core.config import Settings
from snapvault.core.errors import DiskWriteError, ResourceExhaustedError
from snapvault.scheduler.events import InvocationGuard, ProgressChannel, ProgressEvent, ProgressKind

logger = logging.getLogger(__name__)

SAFETY_FACTOR = 1.1
DISK_WRITE_ERRNOS = frozenset({errno.ENOSPC, errno.EIO, errno.EDQUOT})


def part_filename(base_name: str, entity: str, index: int) -> str:
    suffix = "" if index == 0 else str(index + 1)
    return f"{base_name}-{entity}{suffix}.zip"


def part_index_from_name(base_name: str, entity: str, name: str) -> tuple[int, bool] | None:
    """Return (index, is_temp) for a part filename of this base and entity."""
    pattern = re.compile(rf"^{re.escape(base_name)}-{re.escape(entity)}(\d*)\.zip(\.tmp)?$")
    match = pattern.match(name)
    if match is None:
        return None
    digits = match.group(1)
    index = int(digits) - 1 if digits else 0
    if index < 0:
        return None
    return index, match.group(2) is not None


@dataclass
class _OpenPart:
    index: int
    tmp_path: Path
    final_path: Path
    manifest: dict[str, int] = field(default_factory=dict)

    @property
    def size(self) -> int:
        try:
            return self.tmp_path.stat().st_size
        except FileNotFoundError:
            return 0


class ArchiveBuilder:
    """Writes one entity's files into size-capped zip parts, resumable per file."""

    def __init__(
        self,
        settings: Settings,
        *,
        channel: ProgressChannel | None = None,
        guard: InvocationGuard | None = None,
    ):
        self._settings = settings
        self._channel = channel
        self._guard = guard
        self._store_extensions = settings.store_extension_set()
        self.parts: list[ArchivePart] = []
        self.unchanged: list[FileQueueEntry] = []
        self.skipped: list[str] = []
        self.integrity_errors = 0

    @property
    def storage_root(self) -> Path:
        return self._settings.backup_dir

    def build(
        self,
        entity: str,
        source_roots: Sequence[Path],
        base_name: str,
        start_index: int = 0,
        *,
        exclusions: ExclusionRules | None = None,
        cutoff: float | None = None,
    ) -> dict[int, str]:
        self.parts = []
        self.skipped = []
        self.integrity_errors = 0

        existing_files, finished, open_part, ratio = self._scan_existing(entity, base_name, start_index)
        if self._guard is not None:
            self._guard.check_overlap(open_part.tmp_path)

        queue = self._enumerate(entity, source_roots, base_name, exclusions, cutoff)
        self.unchanged = queue.unchanged

        written = self._write_queue(entity, queue.entries, existing_files, open_part, ratio, base_name)
        finished.update(written)

        if entity in CACHEABLE_ENTITIES:
            EnumerationCache(self.storage_root, base_name, entity).delete()
        return dict(sorted(finished.items()))

    def _scan_existing(
        self,
        entity: str,
        base_name: str,
        start_index: int,
    ) -> tuple[dict[str, int], dict[int, str], _OpenPart, float]:
        existing_files: dict[str, int] = {}
        finished: dict[int, str] = {}
        temp_manifests: dict[int, dict[str, int]] = {}
        raw_total = 0
        compressed_total = 0

        for candidate in sorted(self.storage_root.glob(f"{base_name}-{entity}*.zip*")):
            parsed = part_index_from_name(base_name, entity, candidate.name)
            if parsed is None:
                continue
            index, is_temp = parsed
            try:
                with zipfile.ZipFile(candidate, "r") as archive:
                    infos = archive.infolist()
            except (zipfile.BadZipFile, OSError) as exc:
                self.integrity_errors += 1
                aside = candidate.with_name(candidate.name + ".corrupt")
                logger.error("Existing part %s is unreadable (%s); moving it aside", candidate.name, exc)
                candidate.replace(aside)
                continue

            manifest = {info.filename: info.file_size for info in infos if not info.is_dir()}
            existing_files.update(manifest)
            raw_total += sum(manifest.values())
            compressed_total += candidate.stat().st_size
            if is_temp:
                temp_manifests[index] = manifest
            else:
                finished[index] = candidate.name
                self.parts.append(
                    ArchivePart(
                        entity=entity,
                        sequence_index=index,
                        path=candidate,
                        size_bytes=candidate.stat().st_size,
                        manifest=manifest,
                    )
                )

        if temp_manifests:
            current_index = max(temp_manifests)
        elif finished:
            current_index = max(finished) + 1
        else:
            current_index = start_index

        ratio = 1.0
        if raw_total > 0 and compressed_total > 0:
            ratio = min(compressed_total / raw_total, 1.0)
        if existing_files:
            logger.info(
                "Resuming %s: %d files already archived in %d parts (compression ratio %.2f)",
                entity,
                len(existing_files),
                len(finished) + len(temp_manifests),
                ratio,
            )

        final_name = part_filename(base_name, entity, current_index)
        open_part = _OpenPart(
            index=current_index,
            tmp_path=self.storage_root / f"{final_name}.tmp",
            final_path=self.storage_root / final_name,
            manifest=dict(temp_manifests.get(current_index, {})),
        )
        return existing_files, finished, open_part, ratio

    def _enumerate(
        self,
        entity: str,
        source_roots: Sequence[Path],
        base_name: str,
        exclusions: ExclusionRules | None,
        cutoff: float | None,
    ) -> EnumerationResult:
        roots = [Path(root) for root in source_roots]
        cache = EnumerationCache(self.storage_root, base_name, entity) if entity in CACHEABLE_ENTITIES else None
        if cache is not None:
            cached = cache.load(roots, self._settings.enumeration_cache_freshness_seconds)
            if cached is not None:
                return cached

        result = collect_queue(roots, exclusions, storage_root=self.storage_root, cutoff=cutoff)
        logger.info(
            "Enumerated %s: %d files to consider, %d unchanged (%.1fs)",
            entity,
            len(result.entries),
            len(result.unchanged),
            result.seconds,
        )
        if cache is not None and result.seconds > self._settings.enumeration_cache_threshold_seconds:
            cache.save(roots, result, self._settings.cache_memory_fraction)
        return result

    def _write_queue(
        self,
        entity: str,
        entries: Sequence[FileQueueEntry],
        existing_files: dict[str, int],
        part: _OpenPart,
        ratio: float,
        base_name: str,
    ) -> dict[int, str]:
        settings = self._settings
        max_part = settings.max_part_bytes
        written: dict[int, str] = {}
        pending: list[FileQueueEntry] = []
        pending_bytes = 0
        last_commit = time.monotonic()
        part_size = part.size
        part_has_files = part_size > 0

        def commit() -> None:
            nonlocal pending, pending_bytes, last_commit, part_size, ratio, part_has_files
            if not pending:
                return
            before = part_size
            added = self._append_batch(part, pending)
            part_size = part.size
            if added > 0:
                part_has_files = True
                grown = part_size - before
                if grown > 0:
                    ratio = max(0.0, min(grown / added, 1.0))
            logger.info(
                "Committed batch to %s: %d files, %.1fKB raw, part now %.1fKB",
                part.tmp_path.name,
                len(pending),
                pending_bytes / 1024,
                part_size / 1024,
            )
            batch_files = len(pending)
            pending = []
            pending_bytes = 0
            last_commit = time.monotonic()
            self._emit(
                ProgressKind.ARCHIVE_BATCH,
                entity,
                {"part": part.tmp_path.name, "files": batch_files, "size": part_size},
            )

        def rotate() -> None:
            nonlocal part, part_size, part_has_files
            written[part.index] = self._finalize(entity, part)
            next_index = part.index + 1
            next_name = part_filename(base_name, entity, next_index)
            part = _OpenPart(
                index=next_index,
                tmp_path=self.storage_root / f"{next_name}.tmp",
                final_path=self.storage_root / next_name,
            )
            part_size = 0
            part_has_files = False

        def predicted(extra: int) -> float:
            return part_size + SAFETY_FACTOR * (pending_bytes + extra) * ratio

        for entry in entries:
            if entry.stored_as in existing_files:
                if existing_files[entry.stored_as] != entry.size_bytes:
                    logger.info(
                        "%s changed size since it was archived (%d -> %d bytes); keeping the archived copy",
                        entry.stored_as,
                        existing_files[entry.stored_as],
                        entry.size_bytes,
                    )
                continue
            if settings.skip_file_over_bytes is not None and entry.size_bytes > settings.skip_file_over_bytes:
                logger.warning(
                    "Skipping %s: %.1fMB exceeds the configured skip size",
                    entry.stored_as,
                    entry.size_bytes / 1048576,
                )
                self.skipped.append(entry.stored_as)
                continue
            if entry.size_bytes > settings.warn_file_over_bytes:
                logger.warning("Very large file included: %s (%.1fMB)", entry.stored_as, entry.size_bytes / 1048576)

            if pending and entry.size_bytes > settings.large_file_bytes:
                commit()
            if predicted(entry.size_bytes) > max_part and (pending or part_has_files):
                commit()
                if part_has_files and predicted(entry.size_bytes) > max_part:
                    rotate()

            pending.append(entry)
            pending_bytes += entry.size_bytes

            if (
                len(pending) > settings.batch_max_files
                or pending_bytes > settings.max_zip_batch_bytes
                or entry.size_bytes > settings.large_file_bytes
                or time.monotonic() - last_commit > settings.commit_interval_seconds
            ):
                commit()
                if part_size > max_part:
                    rotate()

        commit()
        if part_has_files or part.tmp_path.exists():
            written[part.index] = self._finalize(entity, part)
        return written

    def _append_batch(self, part: _OpenPart, batch: Sequence[FileQueueEntry]) -> int:
        self._check_free_disk()
        mode = "a" if part.tmp_path.exists() else "w"
        added = 0
        try:
            with zipfile.ZipFile(
                part.tmp_path,
                mode,
                compression=zipfile.ZIP_DEFLATED,
                allowZip64=True,
                strict_timestamps=False,
            ) as archive:
                for entry in batch:
                    compress_type = (
                        zipfile.ZIP_STORED
                        if entry.absolute_path.suffix.lower().lstrip(".") in self._store_extensions
                        else zipfile.ZIP_DEFLATED
                    )
                    try:
                        archive.write(entry.absolute_path, arcname=entry.stored_as, compress_type=compress_type)
                    except FileNotFoundError:
                        logger.warning("File vanished before it could be archived: %s", entry.stored_as)
                        self.skipped.append(entry.stored_as)
                        continue
                    except PermissionError as exc:
                        logger.warning("Unreadable file skipped: %s (%s)", entry.stored_as, exc)
                        self.skipped.append(entry.stored_as)
                        continue
                    part.manifest[entry.stored_as] = entry.size_bytes
                    added += entry.size_bytes
        except OSError as exc:
            if exc.errno in DISK_WRITE_ERRNOS:
                raise DiskWriteError(f"Write to {part.tmp_path.name} failed: {exc}") from exc
            raise
        return added

    def _check_free_disk(self) -> None:
        free = psutil.disk_usage(str(self.storage_root)).free
        if free < self._settings.fatal_free_disk_bytes:
            raise ResourceExhaustedError(
                f"Only {free / 1048576:.1f}MB free in {self.storage_root.as_posix()}; refusing to continue"
            )

    def _finalize(self, entity: str, part: _OpenPart) -> str:
        if not part.tmp_path.exists():
            return part.final_path.name
        part.tmp_path.replace(part.final_path)
        size = part.final_path.stat().st_size
        self.parts.append(
            ArchivePart(
                entity=entity,
                sequence_index=part.index,
                path=part.final_path,
                size_bytes=size,
                manifest=dict(part.manifest),
            )
        )
        logger.info("Finished part %s (%.1fKB, %d files)", part.final_path.name, size / 1024, len(part.manifest))
        self._emit(ProgressKind.ARCHIVE_PART, entity, {"index": part.index, "filename": part.final_path.name, "size": size})
        return part.final_path.name

    def _emit(self, kind: ProgressKind, entity: str, detail: dict[str, object]) -> None:
        if self._channel is not None:
            self._channel.emit(ProgressEvent(kind=kind, entity=entity, detail=detail))

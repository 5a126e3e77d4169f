from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Iterator, Sequence

from snapvault.archiver.exclusions import ExclusionRules
from snapvault.archiver.types import EnumerationResult, FileQueueEntry

logger = logging.getLogger(__name__)

DO_NOT_BACKUP_MARKER = ".donotbackup"


def iter_entity_files(
    root: Path,
    rules: ExclusionRules | None = None,
    *,
    storage_root: Path | None = None,
    cutoff: float | None = None,
    unchanged: list[FileQueueEntry] | None = None,
) -> Iterator[FileQueueEntry]:
    """Walk ``root`` depth-first in sorted order and yield archivable files.

    Stored paths are relative to the parent of ``root`` so that the first
    component names the entity directory. With ``cutoff`` set, files whose
    mtime is not newer go to ``unchanged`` instead of being yielded.
    """
    root = Path(root)
    if not root.exists():
        logger.warning("Backup root does not exist: %s", root.as_posix())
        return
    base = root.parent
    active_rules = rules or ExclusionRules()
    storage_real = os.path.realpath(storage_root) if storage_root is not None else None

    if root.is_file():
        entry = _make_entry(root, root.name)
        if entry is not None:
            yield entry
        return

    yield from _walk(
        root,
        rel_to_root="",
        base=base,
        rules=active_rules,
        storage_real=storage_real,
        ancestors=frozenset(),
        cutoff=cutoff,
        unchanged=unchanged,
    )


def _walk(
    directory: Path,
    *,
    rel_to_root: str,
    base: Path,
    rules: ExclusionRules,
    storage_real: str | None,
    ancestors: frozenset[str],
    cutoff: float | None,
    unchanged: list[FileQueueEntry] | None,
) -> Iterator[FileQueueEntry]:
    real = os.path.realpath(directory)
    if real in ancestors:
        logger.warning(
            "Symlink loop: %s resolves to %s, which is already on the traversal path; skipping",
            directory.as_posix(),
            real,
        )
        return
    if storage_real is not None and real == storage_real:
        logger.info("Skipping the backup storage directory: %s", directory.as_posix())
        return
    if (directory / DO_NOT_BACKUP_MARKER).exists():
        logger.info("Skipping directory with %s marker: %s", DO_NOT_BACKUP_MARKER, directory.as_posix())
        return

    try:
        with os.scandir(directory) as iterator:
            children = sorted(iterator, key=lambda item: item.name)
    except OSError as exc:
        logger.warning("Unreadable directory %s: %s", directory.as_posix(), exc)
        return

    path_ancestors = ancestors | {real}
    for child in children:
        rel_path = f"{rel_to_root}/{child.name}" if rel_to_root else child.name
        child_path = Path(child.path)
        try:
            is_dir = child.is_dir(follow_symlinks=True)
            is_file = not is_dir and child.is_file(follow_symlinks=True)
        except OSError as exc:
            logger.warning("Could not inspect %s: %s", child_path.as_posix(), exc)
            continue

        matched = rules.match(rel_path, is_dir=is_dir)
        if matched is not None:
            logger.info("Excluded (%s): %s", matched.value, rel_path)
            continue

        if is_dir:
            yield from _walk(
                child_path,
                rel_to_root=rel_path,
                base=base,
                rules=rules,
                storage_real=storage_real,
                ancestors=path_ancestors,
                cutoff=cutoff,
                unchanged=unchanged,
            )
            continue

        if not is_file:
            if child.is_symlink():
                logger.warning("Broken symlink skipped: %s", child_path.as_posix())
            continue

        entry = _make_entry(child_path, child_path.relative_to(base).as_posix())
        if entry is None:
            continue
        if cutoff is not None and entry.modified_time <= cutoff:
            if unchanged is not None:
                unchanged.append(entry)
            continue
        yield entry


def _make_entry(path: Path, stored_as: str) -> FileQueueEntry | None:
    try:
        stat = path.stat()
    except FileNotFoundError:
        logger.info("File vanished during enumeration: %s", path.as_posix())
        return None
    except OSError as exc:
        logger.warning("Could not stat %s: %s", path.as_posix(), exc)
        return None
    return FileQueueEntry(
        absolute_path=path,
        stored_as=stored_as,
        size_bytes=int(stat.st_size),
        modified_time=float(stat.st_mtime),
    )


def collect_queue(
    roots: Sequence[Path],
    rules: ExclusionRules | None = None,
    *,
    storage_root: Path | None = None,
    cutoff: float | None = None,
) -> EnumerationResult:
    started = time.monotonic()
    entries: list[FileQueueEntry] = []
    unchanged: list[FileQueueEntry] = []
    for root in roots:
        entries.extend(
            iter_entity_files(
                Path(root),
                rules,
                storage_root=storage_root,
                cutoff=cutoff,
                unchanged=unchanged,
            )
        )
    return EnumerationResult(entries=entries, unchanged=unchanged, seconds=time.monotonic() - started)

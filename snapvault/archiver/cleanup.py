from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

GENERIC_TEMP_SUFFIXES = (".tmp", ".zip.tmp", ".tmp.gz")


def _is_temp_name(name: str) -> bool:
    if name.endswith(GENERIC_TEMP_SUFFIXES):
        return True
    return "-db-table-" in name and name.endswith(".gz") and ".table." in name


def cleanup_stale_temp_files(
    storage_root: Path,
    max_age_seconds: float,
    active_file_bases: Iterable[str] = (),
    *,
    now: float | None = None,
) -> list[Path]:
    """Delete abandoned temporary files; those of active jobs are kept."""
    effective_now = time.time() if now is None else now
    active = tuple(active_file_bases)
    removed: list[Path] = []
    if not storage_root.exists():
        return removed

    for candidate in sorted(storage_root.iterdir()):
        if not candidate.is_file() or not _is_temp_name(candidate.name):
            continue
        if any(candidate.name.startswith(base + "-") for base in active):
            continue
        try:
            age = effective_now - candidate.stat().st_mtime
        except FileNotFoundError:
            continue
        if age <= max_age_seconds:
            continue
        candidate.unlink(missing_ok=True)
        removed.append(candidate)
        logger.info("Deleted stale temporary file %s (%.0fs old)", candidate.name, age)
    return removed

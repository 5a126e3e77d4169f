from __future__ import annotations

import gzip
import json
import logging
import time
from pathlib import Path
from typing import Sequence

import psutil

from snapvault.archiver.types import EnumerationResult, file_entry_from_dict, file_entry_to_dict

logger = logging.getLogger(__name__)

CACHEABLE_ENTITIES = frozenset({"uploads", "others"})


class EnumerationCache:
    """Gzipped JSON snapshot of a slow enumeration, reused across invocations."""

    def __init__(self, storage_root: Path, base_name: str, entity: str):
        self.path = storage_root / f"{base_name}-cachelist-{entity}.json.gz"
        self.entity = entity

    def load(self, roots: Sequence[Path], freshness_seconds: float) -> EnumerationResult | None:
        if not self.path.exists():
            return None
        age = time.time() - self.path.stat().st_mtime
        if age > freshness_seconds:
            logger.info("Enumeration cache for %s is stale (%.0fs old); ignoring", self.entity, age)
            return None
        try:
            with gzip.open(self.path, "rt", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Enumeration cache %s is unreadable: %s", self.path.name, exc)
            return None

        expected_roots = [Path(root).as_posix() for root in roots]
        if payload.get("roots") != expected_roots:
            logger.info("Enumeration cache for %s was built for different roots; ignoring", self.entity)
            return None

        entries = [file_entry_from_dict(raw) for raw in payload.get("entries", [])]
        unchanged = [file_entry_from_dict(raw) for raw in payload.get("unchanged", [])]
        logger.info("Using enumeration cache for %s (%d entries)", self.entity, len(entries))
        return EnumerationResult(entries=entries, unchanged=unchanged, seconds=0.0, from_cache=True)

    def save(self, roots: Sequence[Path], result: EnumerationResult, memory_fraction: float) -> bool:
        payload = {
            "created_at": time.time(),
            "roots": [Path(root).as_posix() for root in roots],
            "entries": [file_entry_to_dict(entry) for entry in result.entries],
            "unchanged": [file_entry_to_dict(entry) for entry in result.unchanged],
        }
        encoded = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        available = psutil.virtual_memory().available
        if available < len(encoded) / memory_fraction:
            logger.warning(
                "Not caching enumeration for %s: %d bytes needed, %d available",
                self.entity,
                len(encoded),
                available,
            )
            return False

        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with gzip.open(tmp_path, "wb") as handle:
            handle.write(encoded)
        tmp_path.replace(self.path)
        logger.info("Cached enumeration for %s (%d entries)", self.entity, len(result.entries))
        return True

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)

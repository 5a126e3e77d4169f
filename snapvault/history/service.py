from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from snapvault.core.config import Settings
from snapvault.core.path_safety import PathSafetyError, resolve_under_root
from snapvault.db.models import BackupSet, BackupSetStatus
from snapvault.history.types import BackupFileName, BackupSetSnapshot

logger = logging.getLogger(__name__)

FILE_BASE_TIME_FORMAT = "%Y-%m-%d-%H%M"
BACKUP_FILENAME = re.compile(
    r"^(?P<base>backup_(?P<date>\d{4}-\d{2}-\d{2}-\d{4})_(?P<site>.*)_(?P<nonce>[0-9a-f]{12}))"
    r"-(?P<component>[a-z]+)(?P<index>\d*)\.(?P<ext>zip|gz)$"
)


class BackupSetNotFoundError(RuntimeError):
    pass


def parse_backup_filename(name: str) -> BackupFileName | None:
    match = BACKUP_FILENAME.match(name)
    if match is None:
        return None
    try:
        stamp = datetime.strptime(match.group("date"), FILE_BASE_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    digits = match.group("index")
    index = int(digits) - 1 if digits else 0
    if index < 0:
        return None
    return BackupFileName(
        file_base=match.group("base"),
        timestamp=int(stamp.timestamp()),
        site=match.group("site"),
        nonce=match.group("nonce"),
        component=match.group("component"),
        index=index,
        extension=match.group("ext"),
    )


class HistoryService:
    """Index of completed backup sets, one row per job.

    The storage directory is the source of truth; ``rebuild`` re-derives the
    index from the filenames found there.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    @property
    def storage_root(self) -> Path:
        return self._settings.backup_dir

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _to_snapshot(self, row: BackupSet) -> BackupSetSnapshot:
        return BackupSetSnapshot(
            job_id=row.job_id,
            timestamp=int(row.timestamp),
            file_base=row.file_base,
            components={entity: list(names) for entity, names in (row.components or {}).items()},
            sizes={name: int(size) for name, size in (row.sizes or {}).items()},
            total_size=int(row.total_size),
            status=row.status,
            created_at=self._coerce_utc(row.created_at),
        )

    def save(
        self,
        job_id: str,
        components: dict[str, list[str]],
        sizes: dict[str, int],
        timestamp: int,
        status: BackupSetStatus = BackupSetStatus.COMPLETE,
        *,
        file_base: str | None = None,
    ) -> bool:
        """Insert or update the set for ``job_id``.

        Returns False when another set already owns ``timestamp``.
        """
        if file_base is None:
            file_base = _file_base_from_components(components)
        with self._session_factory() as session:
            row = session.get(BackupSet, job_id)
            if row is None:
                row = BackupSet(job_id=job_id)
                session.add(row)
            row.timestamp = int(timestamp)
            row.file_base = file_base
            row.components = {entity: list(names) for entity, names in components.items()}
            row.sizes = {name: int(size) for name, size in sizes.items()}
            row.total_size = sum(int(size) for size in sizes.values())
            row.status = status
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning("Backup set %s not saved: timestamp %d is already taken", job_id, timestamp)
                return False
        logger.info("Saved backup set %s (%d files, %d bytes)", job_id, len(sizes), sum(sizes.values()))
        return True

    def get(self, job_id: str | None = None, timestamp: int | None = None) -> BackupSetSnapshot | None:
        if job_id is None and timestamp is None:
            raise ValueError("Either job_id or timestamp is required")
        with self._session_factory() as session:
            stmt = select(BackupSet)
            if job_id is not None:
                stmt = stmt.where(BackupSet.job_id == job_id)
            if timestamp is not None:
                stmt = stmt.where(BackupSet.timestamp == int(timestamp))
            row = session.scalar(stmt.limit(1))
            return None if row is None else self._to_snapshot(row)

    def list(self, *, status: BackupSetStatus | None = None, limit: int = 100) -> list[BackupSetSnapshot]:
        bounded_limit = max(1, min(limit, 1000))
        with self._session_factory() as session:
            stmt = select(BackupSet).order_by(BackupSet.timestamp.desc()).limit(bounded_limit)
            if status is not None:
                stmt = stmt.where(BackupSet.status == status)
            return [self._to_snapshot(row) for row in session.scalars(stmt).all()]

    def delete(self, timestamp: int) -> bool:
        """Delete the set taken at ``timestamp`` along with its files."""
        with self._session_factory() as session:
            row = session.scalar(select(BackupSet).where(BackupSet.timestamp == int(timestamp)))
            if row is None:
                return False
            snapshot = self._to_snapshot(row)

            for name in snapshot.filenames():
                try:
                    path = resolve_under_root(self.storage_root, name)
                except PathSafetyError:
                    logger.error("Refusing to delete %s: not inside the storage directory", name)
                    raise
                if path.exists():
                    path.unlink()
                    logger.info("Deleted backup file %s", name)

            session.delete(row)
            session.commit()
        logger.info("Deleted backup set %s (timestamp %d)", snapshot.job_id, snapshot.timestamp)
        return True

    def rebuild(self, active_file_bases: Iterable[str] = ()) -> dict[str, BackupSetSnapshot]:
        """Re-derive the index from the files present in the storage directory.

        Sets belonging to a running job are left alone. Rows whose files are
        all gone are removed; the rest are upserted from what is on disk.
        """
        active = set(active_file_bases)
        found = self._scan()

        with self._session_factory() as session:
            rows = {row.job_id: row for row in session.scalars(select(BackupSet)).all()}
            taken = {int(row.timestamp) for row in rows.values()}

            for job_id, row in rows.items():
                if job_id in found or row.file_base in active:
                    continue
                logger.info("Backup set %s has no files left; removing it from history", job_id)
                session.execute(delete(BackupSet).where(BackupSet.job_id == job_id))
                taken.discard(int(row.timestamp))

            for job_id, entry in found.items():
                if entry["file_base"] in active:
                    continue
                row = rows.get(job_id)
                if row is None:
                    timestamp = entry["timestamp"]
                    while timestamp in taken:
                        timestamp += 1
                    taken.add(timestamp)
                    row = BackupSet(job_id=job_id, timestamp=timestamp, status=BackupSetStatus.COMPLETE)
                    session.add(row)
                    logger.info("Adding backup set %s found on disk (%s)", job_id, entry["file_base"])
                row.file_base = entry["file_base"]
                row.components = entry["components"]
                row.sizes = entry["sizes"]
                row.total_size = sum(entry["sizes"].values())
            session.commit()

            return {
                row.job_id: self._to_snapshot(row)
                for row in session.scalars(select(BackupSet).order_by(BackupSet.timestamp.desc())).all()
            }

    def _scan(self) -> dict[str, dict[str, Any]]:
        found: dict[str, dict[str, Any]] = {}
        indexed: dict[str, dict[str, list[tuple[int, str]]]] = {}
        for candidate in sorted(self.storage_root.iterdir()):
            if not candidate.is_file():
                continue
            parsed = parse_backup_filename(candidate.name)
            if parsed is None:
                continue
            entry = found.setdefault(
                parsed.nonce,
                {"file_base": parsed.file_base, "timestamp": parsed.timestamp, "components": {}, "sizes": {}},
            )
            entry["sizes"][candidate.name] = candidate.stat().st_size
            indexed.setdefault(parsed.nonce, {}).setdefault(parsed.component, []).append((parsed.index, candidate.name))

        for nonce, components in indexed.items():
            found[nonce]["components"] = {
                component: [name for _index, name in sorted(parts)] for component, parts in components.items()
            }
        return found


def _file_base_from_components(components: dict[str, list[str]]) -> str:
    for names in components.values():
        for name in names:
            parsed = parse_backup_filename(name)
            if parsed is not None:
                return parsed.file_base
    return ""


def history_snapshot_to_dict(snapshot: BackupSetSnapshot) -> dict[str, Any]:
    return {
        "job_id": snapshot.job_id,
        "timestamp": snapshot.timestamp,
        "file_base": snapshot.file_base,
        "components": snapshot.components,
        "sizes": snapshot.sizes,
        "total_size": snapshot.total_size,
        "status": snapshot.status.value,
        "created_at": snapshot.created_at,
    }

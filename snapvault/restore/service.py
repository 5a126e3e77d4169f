from __future__ import annotations

import logging
import re
from dataclasses import asdict
from typing import Any, Sequence

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from snapvault.core.config import Settings
from snapvault.db.models import JobKind, JobStage, JobStatus
from snapvault.db.session import create_database_engine
from snapvault.history.service import BackupSetNotFoundError, HistoryService
from snapvault.history.types import BackupSetSnapshot
from snapvault.importer.service import DatabaseImporter, RestoreOptions
from snapvault.jobs.lifecycle import ResumableJobService
from snapvault.jobs.service import new_job_nonce
from snapvault.jobs.types import JobSnapshot
from snapvault.restore.files import FilesRestorer
from snapvault.scheduler.events import ProgressChannel
from snapvault.scheduler.service import Scheduler

logger = logging.getLogger(__name__)

DB_COMPONENT = "db"
RESTORE_TASK_KEY = "restore"
TABLE_PREFIX = re.compile(r"^[A-Za-z0-9_]+$")


class RestoreService(ResumableJobService):
    """Restore jobs: replay the dump, then unpack each file entity over its roots."""

    kind = JobKind.RESTORE
    lock_prefix = "restore"

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        target_engine: Engine | None = None,
    ):
        super().__init__(settings, session_factory)
        self.history = HistoryService(settings, session_factory)
        self._target_engine = target_engine

    def target_engine(self) -> Engine:
        if self._target_engine is None:
            self._target_engine = create_database_engine(self._settings.effective_source_database_url)
        return self._target_engine

    def start_restore(
        self,
        backup_job_id: str | None = None,
        *,
        timestamp: int | None = None,
        entities: Sequence[str] | None = None,
        new_prefix: str | None = None,
        tables_to_skip: Sequence[str] = (),
    ) -> JobSnapshot:
        backup_set = self.history.get(job_id=backup_job_id, timestamp=timestamp)
        if backup_set is None:
            raise BackupSetNotFoundError(f"Backup set not found: {backup_job_id or timestamp}")
        selected = list(backup_set.components) if entities is None else list(dict.fromkeys(entities))
        missing = [entity for entity in selected if entity not in backup_set.components]
        if missing:
            raise ValueError(f"Backup set {backup_set.job_id} does not contain: {', '.join(missing)}")
        if not selected:
            raise ValueError("Nothing to restore: no entities selected")
        if new_prefix is not None and not TABLE_PREFIX.match(new_prefix):
            raise ValueError("new_prefix must be alphanumeric with underscores")

        task_data: dict[str, Any] = {
            "backup_job_id": backup_set.job_id,
            "timestamp": backup_set.timestamp,
            "entities": selected,
            RESTORE_TASK_KEY: {
                "new_prefix": new_prefix,
                "tables_to_skip": list(tables_to_skip),
                "last_processed_table": None,
            },
            "parts_done": {},
        }
        job = self.jobs.create_job(JobKind.RESTORE, backup_set.file_base, task_data, new_job_nonce())
        self._schedule_first(job)
        logger.info(
            "Restore %s created from backup %s: entities=%s",
            job.id,
            backup_set.job_id,
            ",".join(selected),
        )
        return job

    def _backup_set(self, job: JobSnapshot) -> BackupSetSnapshot:
        backup_job_id = job.task_data.get("backup_job_id")
        backup_set = self.history.get(job_id=backup_job_id)
        if backup_set is None:
            raise BackupSetNotFoundError(f"Backup set {backup_job_id} has disappeared from history")
        return backup_set

    def _run_stages(self, job: JobSnapshot, scheduler: Scheduler, channel: ProgressChannel) -> None:
        entities = list(job.task_data.get("entities") or [])
        backup_set = self._backup_set(job)
        stage = job.stage

        if stage == JobStage.BEGUN:
            stage = self.jobs.set_stage(job.id, JobStage.DB_RESTORING).stage

        if stage == JobStage.DB_RESTORING:
            if DB_COMPONENT in entities:
                self._restore_database(job.id, backup_set, channel)
            stage = self.jobs.set_stage(job.id, JobStage.DB_RESTORED).stage

        if stage == JobStage.DB_RESTORED:
            stage = self.jobs.set_stage(job.id, JobStage.FILES_RESTORING).stage

        if stage == JobStage.FILES_RESTORING:
            self._restore_files(job.id, backup_set, [entity for entity in entities if entity != DB_COMPONENT], scheduler, channel)
            self.jobs.finish_job(job.id, JobStatus.COMPLETED)

    def _restore_database(self, job_id: str, backup_set: BackupSetSnapshot, channel: ProgressChannel) -> None:
        names = backup_set.components.get(DB_COMPONENT) or []
        if not names:
            raise BackupSetNotFoundError(f"Backup set {backup_set.job_id} has no database dump")
        dump_path = self.storage_root / names[0]
        if not dump_path.exists():
            raise FileNotFoundError(f"Database dump is missing: {names[0]}")

        record = dict(self.jobs.get_job(job_id).task_data.get(RESTORE_TASK_KEY) or {})
        options = RestoreOptions(
            new_prefix=record.get("new_prefix"),
            tables_to_skip=list(record.get("tables_to_skip") or []),
            last_processed_table=record.get("last_processed_table"),
        )

        def remember(source: str, final: str) -> None:
            current = dict(self.jobs.get_job(job_id).task_data.get(RESTORE_TASK_KEY) or {})
            current["last_processed_table"] = source
            self.jobs.set_task_value(job_id, RESTORE_TASK_KEY, current)

        importer = DatabaseImporter(self._settings, self.target_engine(), channel=channel, on_table_restored=remember)
        stats = importer.restore(dump_path, options)
        self.jobs.set_task_value(job_id, "db_stats", asdict(stats))

    def _restore_files(
        self,
        job_id: str,
        backup_set: BackupSetSnapshot,
        entities: list[str],
        scheduler: Scheduler,
        channel: ProgressChannel,
    ) -> None:
        roots_by_entity = self._settings.resolve_entity_roots()

        def remember(entity: str, part: str) -> None:
            done = dict(self.jobs.get_job(job_id).task_data.get("parts_done") or {})
            done[entity] = [*done.get(entity, []), part]
            self.jobs.set_task_value(job_id, "parts_done", done)

        restorer = FilesRestorer(self._settings, channel=channel, guard=scheduler, on_part_restored=remember)
        for entity in entities:
            done = (self.jobs.get_job(job_id).task_data.get("parts_done") or {}).get(entity, [])
            stats = restorer.restore(backup_set, entity, roots_by_entity.get(entity) or [], done_parts=done)
            if stats.rejected:
                logger.warning("%s: %d archive members were rejected as unsafe", entity, len(stats.rejected))

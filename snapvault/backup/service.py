from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Sequence
from urllib.parse import urlsplit

import psutil
from sqlalchemy.orm import Session, sessionmaker

from snapvault.archiver.builder import ArchiveBuilder
from snapvault.archiver.cleanup import cleanup_stale_temp_files
from snapvault.archiver.exclusions import ExclusionRules
from snapvault.core.config import Settings
from snapvault.db.models import JobKind, JobStage, JobStatus
from snapvault.db.session import create_database_engine
from snapvault.exporter.dialect import SourceDatabase
from snapvault.exporter.service import DatabaseExporter
from snapvault.history.service import HistoryService
from snapvault.jobs.lifecycle import ResumableJobService
from snapvault.jobs.service import new_job_nonce
from snapvault.jobs.types import JobSnapshot
from snapvault.scheduler.events import ProgressChannel
from snapvault.scheduler.service import Scheduler

logger = logging.getLogger(__name__)

DB_COMPONENT = "db"
BATCH_SHRINK_FACTOR = 0.75
HISTORY_TIMESTAMP_ATTEMPTS = 60


def site_slug(site_url: str) -> str:
    host = urlsplit(site_url).hostname or ""
    slug = re.sub(r"[^A-Za-z0-9]", "", host)[:32]
    return slug or "site"


class BackupService(ResumableJobService):
    """Backup jobs: database export, then one archive series per file entity."""

    kind = JobKind.BACKUP
    lock_prefix = "backup"

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        source: SourceDatabase | None = None,
    ):
        super().__init__(settings, session_factory)
        self.history = HistoryService(settings, session_factory)
        self._source = source

    def source(self) -> SourceDatabase:
        if self._source is None:
            self._source = SourceDatabase(create_database_engine(self._settings.effective_source_database_url))
        return self._source

    def start_backup(
        self,
        entities: Sequence[str] | None = None,
        include_db: bool = True,
        incremental_since: float | None = None,
    ) -> JobSnapshot:
        available = self._settings.resolve_entity_roots()
        selected = list(available) if entities is None else list(dict.fromkeys(entities))
        unknown = [entity for entity in selected if entity not in available]
        if unknown:
            raise ValueError(f"Unknown backup entities: {', '.join(unknown)}")
        if not selected and not include_db:
            raise ValueError("Nothing to back up: no entities selected and the database is excluded")

        now = self._now()
        job_id = new_job_nonce()
        file_base = f"backup_{now.strftime('%Y-%m-%d-%H%M')}_{site_slug(self._settings.site_url)}_{job_id}"
        task_data: dict[str, Any] = {
            "entities": selected,
            "include_db": include_db,
            "incremental_since": incremental_since,
            "timestamp": int(now.timestamp()),
            "max_zip_batch_bytes": self._settings.max_zip_batch_bytes,
            "files": {},
            "entities_done": [],
        }
        job = self.jobs.create_job(JobKind.BACKUP, file_base, task_data, job_id)
        self._schedule_first(job)
        logger.info(
            "Backup %s created (%s): database=%s entities=%s",
            job.id,
            file_base,
            include_db,
            ",".join(selected) or "none",
        )
        return job

    def _run_stages(self, job: JobSnapshot, scheduler: Scheduler, channel: ProgressChannel) -> None:
        stage = job.stage
        if stage == JobStage.BEGUN:
            if job.resumption_count == 0:
                cleanup_stale_temp_files(
                    self.storage_root,
                    self._settings.temp_file_max_age_seconds,
                    self.jobs.list_active_file_bases(),
                )
            stage = self.jobs.set_stage(job.id, JobStage.DB_CREATING).stage

        if stage == JobStage.DB_CREATING:
            if job.task_data.get("include_db", True):
                exporter = DatabaseExporter(self._settings, self.source(), self.jobs, channel=channel, guard=scheduler)
                filename = exporter.export(job.id)
                self._record_component(job.id, DB_COMPONENT, [filename])
            stage = self.jobs.set_stage(job.id, JobStage.DB_CREATED).stage

        if stage == JobStage.DB_CREATED:
            stage = self.jobs.set_stage(job.id, JobStage.FILES_CREATING).stage

        if stage == JobStage.FILES_CREATING:
            self._archive_entities(job.id, scheduler, channel)
            stage = self.jobs.set_stage(job.id, JobStage.FILES_CREATED).stage

        if stage == JobStage.FILES_CREATED:
            self._check_free_disk()
            self._record_history(job.id)
            self.jobs.finish_job(job.id, JobStatus.COMPLETED)

    def _archive_entities(self, job_id: str, scheduler: Scheduler, channel: ProgressChannel) -> None:
        job = self.jobs.get_job(job_id)
        task = job.task_data
        batch_bytes = int(task.get("max_zip_batch_bytes") or self._settings.max_zip_batch_bytes)
        settings = self._settings.model_copy(update={"max_zip_batch_bytes": batch_bytes})
        roots_by_entity = settings.resolve_entity_roots()
        done = set(task.get("entities_done") or [])

        for entity in task.get("entities") or []:
            if entity in done:
                continue
            roots = roots_by_entity.get(entity) or []
            if not roots:
                logger.warning("No roots are configured for %s any more; skipping it", entity)
                done.add(entity)
                self.jobs.set_task_value(job_id, "entities_done", sorted(done))
                continue
            builder = ArchiveBuilder(settings, channel=channel, guard=scheduler)
            parts = builder.build(
                entity,
                roots,
                job.file_base,
                exclusions=self._exclusions(settings, entity, roots, roots_by_entity),
                cutoff=task.get("incremental_since"),
            )
            if builder.skipped:
                logger.warning("%s: %d files were skipped", entity, len(builder.skipped))
            if parts:
                self._record_component(job_id, entity, list(parts.values()))
            done.add(entity)
            self.jobs.set_task_value(job_id, "entities_done", sorted(done))

    def _exclusions(
        self,
        settings: Settings,
        entity: str,
        roots: Sequence[Path],
        roots_by_entity: dict[str, list[Path]],
    ) -> ExclusionRules:
        rules = ExclusionRules.parse(settings.exclusions_for(entity))
        if entity != "others":
            return rules
        # Directories owned by another entity are never archived twice.
        for other, other_roots in roots_by_entity.items():
            if other == entity:
                continue
            for own in roots:
                for candidate in other_roots:
                    try:
                        relative = Path(candidate).relative_to(own)
                    except ValueError:
                        continue
                    rules.extend_paths([relative.as_posix()])
        return rules

    def _record_component(self, job_id: str, entity: str, filenames: list[str]) -> None:
        files = dict(self.jobs.get_job(job_id).task_data.get("files") or {})
        files[entity] = filenames
        self.jobs.set_task_value(job_id, "files", files)

    def _check_free_disk(self) -> None:
        free = psutil.disk_usage(str(self.storage_root)).free
        if free < self._settings.min_free_disk_bytes:
            logger.warning(
                "Only %.1fMB of disk space is left in %s; future backups may fail",
                free / 1048576,
                self.storage_root.as_posix(),
            )

    def _record_history(self, job_id: str) -> None:
        job = self.jobs.get_job(job_id)
        components: dict[str, list[str]] = {
            entity: list(names) for entity, names in (job.task_data.get("files") or {}).items() if names
        }
        sizes: dict[str, int] = {}
        for names in components.values():
            for name in names:
                sizes[name] = (self.storage_root / name).stat().st_size

        timestamp = int(job.task_data.get("timestamp") or self._now().timestamp())
        for _attempt in range(HISTORY_TIMESTAMP_ATTEMPTS):
            if self.history.save(job_id, components, sizes, timestamp, file_base=job.file_base):
                return
            timestamp += 1
        raise RuntimeError(f"Could not find a free history timestamp for backup {job_id}")

    def _previous_run_unproductive(self, job: JobSnapshot, previous: int) -> None:
        current = int(job.task_data.get("max_zip_batch_bytes") or self._settings.max_zip_batch_bytes)
        shrunk = max(int(current * BATCH_SHRINK_FACTOR), self._settings.min_zip_batch_bytes)
        if shrunk >= current:
            return
        logger.info(
            "Resumption %d made no progress; reducing the zip batch size from %.1fMB to %.1fMB",
            previous,
            current / 1048576,
            shrunk / 1048576,
        )
        self.jobs.set_task_value(job.id, "max_zip_batch_bytes", shrunk)

    def _discard_partial(self, job: JobSnapshot) -> None:
        removed = 0
        for candidate in self.storage_root.glob(f"{job.file_base}-*"):
            if candidate.is_file():
                candidate.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Deleted %d partial backup files of %s", removed, job.file_base)

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from snapvault.backup.service import BackupService
from snapvault.core.config import get_settings
from snapvault.db.models import JobKind
from snapvault.db.session import get_session_factory
from snapvault.jobs.lifecycle import ResumableJobService
from snapvault.jobs.service import JobNotFoundError, JobStateService
from snapvault.jobs.types import JobSnapshot
from snapvault.restore.service import RestoreService
from snapvault.scheduler.service import ResumptionQueue

logger = logging.getLogger(__name__)


def _service_for(kind: JobKind) -> ResumableJobService:
    settings = get_settings()
    if kind == JobKind.BACKUP:
        return BackupService(settings=settings, session_factory=get_session_factory())
    return RestoreService(settings=settings, session_factory=get_session_factory())


def enqueue_backup(
    entities: Sequence[str] | None = None,
    *,
    include_db: bool = True,
    incremental_since: float | None = None,
) -> str:
    service = BackupService(settings=get_settings(), session_factory=get_session_factory())
    snapshot = service.start_backup(entities, include_db=include_db, incremental_since=incremental_since)
    return snapshot.id


def enqueue_restore(
    backup_job_id: str,
    *,
    entities: Sequence[str] | None = None,
    new_prefix: str | None = None,
    tables_to_skip: Sequence[str] = (),
) -> str:
    service = RestoreService(settings=get_settings(), session_factory=get_session_factory())
    snapshot = service.start_restore(
        backup_job_id,
        entities=entities,
        new_prefix=new_prefix,
        tables_to_skip=tables_to_skip,
    )
    return snapshot.id


def run_due_resumptions(limit: int = 10) -> list[JobSnapshot]:
    """Claim due resumptions and run each one; every claim is marked done afterwards."""
    settings = get_settings()
    queue = ResumptionQueue(settings=settings, session_factory=get_session_factory())
    jobs = JobStateService(settings=settings, session_factory=get_session_factory())
    results: list[JobSnapshot] = []
    for claimed in queue.claim_due(limit):
        try:
            job = jobs.get_job(claimed.job_id)
        except JobNotFoundError:
            logger.warning("Scheduled resumption %d refers to a purged job %s", claimed.id, claimed.job_id)
            queue.mark_done(claimed.id)
            continue
        try:
            results.append(_service_for(job.kind).resume(claimed.resumption_no, claimed.job_id))
        finally:
            queue.mark_done(claimed.id)
    return results


def request_abort(job_id: str) -> Path:
    jobs = JobStateService(settings=get_settings(), session_factory=get_session_factory())
    job = jobs.get_job(job_id)
    return _service_for(job.kind).request_abort(job_id)

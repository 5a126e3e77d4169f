from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from snapvault.core.config import Settings
from snapvault.core.errors import AbortRequested, InvocationYield, OverlappingRunError
from snapvault.core.logging import attach_job_log, detach_job_log
from snapvault.db.models import JobKind, JobStatus
from snapvault.jobs.service import InvalidJobStateError, JobStateService
from snapvault.jobs.types import JobSnapshot
from snapvault.scheduler.events import ProgressChannel
from snapvault.scheduler.service import ResumptionQueue, Scheduler, abort_sentinel_path
from snapvault.semaphore.service import SemaphoreService

logger = logging.getLogger(__name__)


class ResumableJobService:
    """One invocation of a resumable job: locking, overlap detection and outcome mapping.

    Subclasses implement ``_run_stages``; everything that turns exceptions
    into job outcomes lives here.
    """

    kind: JobKind
    lock_prefix: str

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory
        self.jobs = JobStateService(settings, session_factory)
        self.queue = ResumptionQueue(settings, session_factory)
        self.semaphore = SemaphoreService(settings, session_factory)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    @property
    def storage_root(self) -> Path:
        return self._settings.backup_dir

    def lock_name(self, job_id: str) -> str:
        return f"{self.lock_prefix}_{job_id}"

    def request_abort(self, job_id: str) -> Path:
        self.jobs.get_job(job_id)
        sentinel = abort_sentinel_path(self.storage_root, job_id)
        sentinel.write_text(str(int(time.time())), encoding="utf-8")
        logger.info("Abort requested for job %s", job_id)
        return sentinel

    def _schedule_first(self, job: JobSnapshot) -> None:
        self.queue.schedule(job.id, 0, self._now())

    def resume(self, resumption_no: int, job_id: str) -> JobSnapshot:
        """Run one invocation of the job; safe to call repeatedly."""
        job = self.jobs.get_job(job_id)
        if job.kind != self.kind:
            raise InvalidJobStateError(f"Job {job_id} is a {job.kind.value} job")
        if job.is_terminal:
            logger.info("Job %s is already %s; nothing to resume", job_id, job.status.value)
            return job

        started_epoch = time.time()
        lock_name = self.lock_name(job_id)
        scheduler = Scheduler(
            self._settings,
            self.jobs,
            self.queue,
            job_id=job_id,
            resumption_no=resumption_no,
            semaphore=self.semaphore,
            lock_name=lock_name,
            started_monotonic=time.monotonic(),
        )
        handler = attach_job_log(job_id, self.storage_root)
        locked = False
        logger.info("%s job %s: resumption %d starting", self.kind.value.capitalize(), job_id, resumption_no)
        try:
            age = (self._now() - job.created_at).total_seconds()
            if age > self._settings.job_max_age_seconds:
                return self._abort(job, f"Job is {age / 3600:.1f} hours old; giving up")

            if resumption_no >= 1:
                self.semaphore.ensure_exists(lock_name)
                if not self.semaphore.lock(lock_name, self._settings.semaphore_timeout_seconds):
                    logger.info(
                        "Failed to gain semaphore lock (%s); another invocation is apparently active "
                        "(will try again on the next resumption)",
                        lock_name,
                    )
                    return self.jobs.get_job(job_id)
                locked = True
                self._check_previous_invocation(job, scheduler, resumption_no)

            scheduler.check_abort()
            job = self.jobs.mark_invocation_started(job_id, resumption_no, started_epoch)
            scheduler.schedule_safety_net()
            if self._stalled(job, resumption_no):
                return self._fail(job, "The job made no progress over its last resumptions")

            channel = ProgressChannel()
            channel.subscribe(scheduler.on_progress)
            self._run_stages(job, scheduler, channel)
            scheduler.clear_scheduled()
            final = self.jobs.get_job(job_id)
            logger.info("%s job %s: %s", self.kind.value.capitalize(), job_id, final.status.value)
            return final
        except InvocationYield:
            return self.jobs.get_job(job_id)
        except OverlappingRunError as exc:
            logger.info("Resumption %d of job %s stopped: %s", resumption_no, job_id, exc)
            return self.jobs.get_job(job_id)
        except AbortRequested as exc:
            return self._abort(job, str(exc))
        except (RuntimeError, OSError, SQLAlchemyError, ValueError) as exc:
            logger.exception("%s job %s failed", self.kind.value.capitalize(), job_id)
            return self._fail(job, f"{type(exc).__name__}: {exc}")
        finally:
            if locked:
                self.semaphore.unlock(lock_name)
            detach_job_log(handler)

    def _check_previous_invocation(self, job: JobSnapshot, scheduler: Scheduler, resumption_no: int) -> None:
        previous = resumption_no - 1
        started = job.runs_started.get(str(previous))
        if started is None:
            return
        run_time = job.run_times.get(str(previous))
        if run_time is not None:
            last_alive = float(started) + float(run_time)
            if last_alive + self._settings.overlap_window_seconds > time.time():
                scheduler.terminate_due_to_activity(
                    "check-in",
                    f"resumption {previous} was still running {time.time() - last_alive:.1f}s ago",
                )
        if previous not in job.useful_checkins:
            self._previous_run_unproductive(job, previous)

    def _stalled(self, job: JobSnapshot, resumption_no: int) -> bool:
        if resumption_no < self._settings.useless_resumption_limit:
            return False
        recent = {resumption_no - 1, resumption_no - 2}
        if recent & set(job.useful_checkins):
            if job.fail_on_resume:
                self.jobs.set_fail_on_resume(job.id, False)
            return False
        if job.fail_on_resume:
            return True
        logger.warning(
            "No useful activity in the last two resumptions; the job will fail if resumption %d is idle as well",
            resumption_no,
        )
        self.jobs.set_fail_on_resume(job.id, True)
        return False

    def _abort(self, job: JobSnapshot, reason: str) -> JobSnapshot:
        logger.warning("Job %s aborted: %s", job.id, reason)
        self._discard_partial(job)
        self.queue.cancel(job.id)
        return self.jobs.finish_job(job.id, JobStatus.ABORTED, reason)

    def _fail(self, job: JobSnapshot, message: str) -> JobSnapshot:
        logger.error("Job %s failed: %s", job.id, message)
        self._discard_partial(job)
        self.queue.cancel(job.id)
        return self.jobs.finish_job(job.id, JobStatus.FAILED, message)

    def _previous_run_unproductive(self, job: JobSnapshot, previous: int) -> None:
        logger.info("Resumption %d of job %s never checked in", previous, job.id)

    def _discard_partial(self, job: JobSnapshot) -> None:
        return None

    def _run_stages(self, job: JobSnapshot, scheduler: Scheduler, channel: ProgressChannel) -> None:
        raise NotImplementedError

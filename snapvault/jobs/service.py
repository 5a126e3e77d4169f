from __future__ import annotations

import hashlib
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from snapvault.core.config import Settings
from snapvault.db.models import Job, JobKind, JobStage, JobStatus
from snapvault.jobs.types import JobSnapshot


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.ABORTED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.ABORTED: set(),
}

BACKUP_STAGES: tuple[JobStage, ...] = (
    JobStage.BEGUN,
    JobStage.DB_CREATING,
    JobStage.DB_CREATED,
    JobStage.FILES_CREATING,
    JobStage.FILES_CREATED,
    JobStage.FINISHED,
)

RESTORE_STAGES: tuple[JobStage, ...] = (
    JobStage.BEGUN,
    JobStage.DB_RESTORING,
    JobStage.DB_RESTORED,
    JobStage.FILES_RESTORING,
    JobStage.FINISHED,
)


def new_job_nonce() -> str:
    material = f"{time.time()}{os.getpid()}{os.urandom(8).hex()}".encode("utf-8")
    return hashlib.md5(material).hexdigest()[20:]


class JobStateService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _enforce_transition(self, from_status: JobStatus, to_status: JobStatus) -> None:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    def _enforce_stage(self, kind: JobKind, from_stage: JobStage, to_stage: JobStage) -> None:
        order = BACKUP_STAGES if kind == JobKind.BACKUP else RESTORE_STAGES
        if to_stage not in order:
            raise InvalidJobStateError(f"Stage {to_stage.value} does not apply to {kind.value} jobs")
        if order.index(to_stage) < order.index(from_stage):
            raise InvalidJobStateError(f"Stage cannot move backwards: {from_stage.value} -> {to_stage.value}")

    def _load(self, session: Session, job_id: str) -> Job:
        job = session.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def _to_snapshot(self, job: Job) -> JobSnapshot:
        created_at = self._coerce_utc(job.created_at)
        updated_at = self._coerce_utc(job.updated_at)
        assert created_at is not None and updated_at is not None
        return JobSnapshot(
            id=job.id,
            kind=job.kind,
            status=job.status,
            stage=job.stage,
            file_base=job.file_base,
            resumption_count=job.resumption_count,
            resume_interval_seconds=job.resume_interval_seconds,
            task_data=dict(job.task_data or {}),
            run_times=dict(job.run_times or {}),
            runs_started=dict(job.runs_started or {}),
            useful_checkins=list(job.useful_checkins or []),
            last_useful_checkin_at=self._coerce_utc(job.last_useful_checkin_at),
            fail_on_resume=job.fail_on_resume,
            last_error=job.last_error,
            created_at=created_at,
            updated_at=updated_at,
            finished_at=self._coerce_utc(job.finished_at),
        )

    def _mutate(self, job_id: str, mutator: Callable[[Job], None]) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id)
            mutator(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def create_job(
        self,
        kind: JobKind,
        file_base: str,
        task_data: dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> JobSnapshot:
        with self._session_factory() as session:
            job = Job(
                id=job_id or new_job_nonce(),
                kind=kind,
                status=JobStatus.PENDING,
                stage=JobStage.BEGUN,
                file_base=file_base,
                resume_interval_seconds=self._settings.resume_interval_seconds,
                task_data=task_data or {},
                run_times={},
                runs_started={},
                useful_checkins=[],
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(self._load(session, job_id))

    def list_jobs(self, *, kind: JobKind | None = None, limit: int = 50) -> list[JobSnapshot]:
        bounded_limit = max(1, min(limit, 200))
        with self._session_factory() as session:
            stmt = select(Job).order_by(Job.created_at.desc(), Job.id.desc()).limit(bounded_limit)
            if kind is not None:
                stmt = stmt.where(Job.kind == kind)
            return [self._to_snapshot(row) for row in session.scalars(stmt).all()]

    def list_active_file_bases(self) -> set[str]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Job.file_base).where(Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]))
            ).all()
            return set(rows)

    def set_task_value(self, job_id: str, key: str, value: Any) -> JobSnapshot:
        def apply(job: Job) -> None:
            job.task_data = {**(job.task_data or {}), key: value}

        return self._mutate(job_id, apply)

    def mark_invocation_started(self, job_id: str, resumption_no: int, started_epoch: float) -> JobSnapshot:
        def apply(job: Job) -> None:
            self._enforce_transition(job.status, JobStatus.RUNNING)
            job.status = JobStatus.RUNNING
            job.resumption_count = max(job.resumption_count, resumption_no)
            job.runs_started = {**(job.runs_started or {}), str(resumption_no): started_epoch}

        return self._mutate(job_id, apply)

    def record_run_time(self, job_id: str, resumption_no: int, elapsed: float) -> JobSnapshot:
        def apply(job: Job) -> None:
            job.run_times = {**(job.run_times or {}), str(resumption_no): round(elapsed, 3)}

        return self._mutate(job_id, apply)

    def record_useful_checkin(self, job_id: str, resumption_no: int) -> JobSnapshot:
        def apply(job: Job) -> None:
            checkins = list(job.useful_checkins or [])
            if resumption_no not in checkins:
                checkins.append(resumption_no)
            job.useful_checkins = checkins
            job.last_useful_checkin_at = self._now()

        return self._mutate(job_id, apply)

    def set_resume_interval(self, job_id: str, seconds: int) -> JobSnapshot:
        def apply(job: Job) -> None:
            job.resume_interval_seconds = int(seconds)

        return self._mutate(job_id, apply)

    def set_stage(self, job_id: str, stage: JobStage) -> JobSnapshot:
        def apply(job: Job) -> None:
            self._enforce_stage(job.kind, job.stage, stage)
            job.stage = stage

        return self._mutate(job_id, apply)

    def set_fail_on_resume(self, job_id: str, value: bool) -> JobSnapshot:
        def apply(job: Job) -> None:
            job.fail_on_resume = value

        return self._mutate(job_id, apply)

    def set_last_error(self, job_id: str, message: str | None) -> JobSnapshot:
        def apply(job: Job) -> None:
            job.last_error = message

        return self._mutate(job_id, apply)

    def finish_job(self, job_id: str, status: JobStatus, error_message: str | None = None) -> JobSnapshot:
        def apply(job: Job) -> None:
            if job.status == status and job.finished_at is not None:
                return
            self._enforce_transition(job.status, status)
            job.status = status
            job.finished_at = self._now()
            if error_message is not None:
                job.last_error = error_message
            if status == JobStatus.COMPLETED:
                job.stage = JobStage.FINISHED

        return self._mutate(job_id, apply)

    def delete_job(self, job_id: str) -> bool:
        with self._session_factory() as session:
            result = session.execute(delete(Job).where(Job.id == job_id))
            session.commit()
            return int(result.rowcount or 0) == 1


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, object]:
    return {
        "id": snapshot.id,
        "kind": snapshot.kind.value,
        "status": snapshot.status.value,
        "stage": snapshot.stage.value,
        "file_base": snapshot.file_base,
        "resumption_count": snapshot.resumption_count,
        "resume_interval_seconds": snapshot.resume_interval_seconds,
        "task_data": snapshot.task_data,
        "run_times": snapshot.run_times,
        "useful_checkins": snapshot.useful_checkins,
        "last_useful_checkin_at": snapshot.last_useful_checkin_at,
        "fail_on_resume": snapshot.fail_on_resume,
        "last_error": snapshot.last_error,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "finished_at": snapshot.finished_at,
    }

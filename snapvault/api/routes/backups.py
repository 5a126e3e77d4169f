from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from snapvault.api.schemas.jobs import AbortResponse, JobResponse, ResumeRequest, StartBackupRequest
from snapvault.backup.service import BackupService
from snapvault.core.config import get_settings
from snapvault.db.models import JobKind
from snapvault.db.session import get_session_factory
from snapvault.jobs.service import InvalidJobStateError, JobNotFoundError, snapshot_to_dict
from snapvault.jobs.types import JobSnapshot

router = APIRouter(prefix="/backups", tags=["backups"])


def get_backup_service() -> BackupService:
    return BackupService(settings=get_settings(), session_factory=get_session_factory())


def _load_backup_job(service: BackupService, job_id: str) -> JobSnapshot:
    try:
        job = service.jobs.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if job.kind != JobKind.BACKUP:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Backup job not found: {job_id}")
    return job


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def start_backup(request: StartBackupRequest, service: BackupService = Depends(get_backup_service)) -> JobResponse:
    try:
        job = service.start_backup(
            request.entities,
            include_db=request.include_db,
            incremental_since=request.incremental_since,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}", response_model=JobResponse)
def get_backup(job_id: str, service: BackupService = Depends(get_backup_service)) -> JobResponse:
    return JobResponse.model_validate(snapshot_to_dict(_load_backup_job(service, job_id)))


@router.post("/{job_id}/resume", response_model=JobResponse)
def resume_backup(
    job_id: str,
    request: ResumeRequest,
    service: BackupService = Depends(get_backup_service),
) -> JobResponse:
    _load_backup_job(service, job_id)
    try:
        job = service.resume(request.resumption_no, job_id)
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/abort", response_model=AbortResponse, status_code=status.HTTP_202_ACCEPTED)
def abort_backup(job_id: str, service: BackupService = Depends(get_backup_service)) -> AbortResponse:
    job = _load_backup_job(service, job_id)
    if job.is_terminal:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Job {job_id} is already {job.status.value}")
    service.request_abort(job_id)
    return AbortResponse(job_id=job_id, requested=True)

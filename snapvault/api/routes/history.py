from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from snapvault.api.schemas.history import BackupSetResponse, HistoryListResponse, HistoryRebuildResponse
from snapvault.core.config import get_settings
from snapvault.db.session import get_session_factory
from snapvault.history.service import HistoryService, history_snapshot_to_dict
from snapvault.jobs.service import JobStateService

router = APIRouter(prefix="/history", tags=["history"])


def get_history_service() -> HistoryService:
    return HistoryService(settings=get_settings(), session_factory=get_session_factory())


@router.get("", response_model=HistoryListResponse)
def list_history(
    limit: int = Query(default=100, ge=1, le=1000),
    service: HistoryService = Depends(get_history_service),
) -> HistoryListResponse:
    items = service.list(limit=limit)
    return HistoryListResponse(items=[BackupSetResponse.model_validate(history_snapshot_to_dict(item)) for item in items])


@router.get("/{job_id}", response_model=BackupSetResponse)
def get_backup_set(job_id: str, service: HistoryService = Depends(get_history_service)) -> BackupSetResponse:
    snapshot = service.get(job_id=job_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Backup set not found: {job_id}")
    return BackupSetResponse.model_validate(history_snapshot_to_dict(snapshot))


@router.delete("/{timestamp}", status_code=status.HTTP_204_NO_CONTENT)
def delete_backup_set(timestamp: int, service: HistoryService = Depends(get_history_service)) -> None:
    if not service.delete(timestamp):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No backup set at timestamp {timestamp}")


@router.post("/rebuild", response_model=HistoryRebuildResponse)
def rebuild_history(service: HistoryService = Depends(get_history_service)) -> HistoryRebuildResponse:
    jobs = JobStateService(settings=get_settings(), session_factory=get_session_factory())
    rebuilt = service.rebuild(jobs.list_active_file_bases())
    items = [BackupSetResponse.model_validate(history_snapshot_to_dict(item)) for item in rebuilt.values()]
    return HistoryRebuildResponse(count=len(items), items=items)

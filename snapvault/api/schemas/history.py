from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class BackupSetResponse(BaseModel):
    job_id: str
    timestamp: int
    file_base: str
    components: dict[str, list[str]]
    sizes: dict[str, int]
    total_size: int
    status: str
    created_at: datetime


class HistoryListResponse(BaseModel):
    items: list[BackupSetResponse]


class HistoryRebuildResponse(BaseModel):
    count: int
    items: list[BackupSetResponse]

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StartBackupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entities: list[str] | None = None
    include_db: bool = True
    incremental_since: float | None = Field(default=None, ge=0)


class StartRestoreRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backup_job_id: str = Field(min_length=1, max_length=32)
    entities: list[str] | None = None
    new_prefix: str | None = Field(default=None, min_length=1, max_length=32, pattern=r"^[A-Za-z0-9_]+$")
    tables_to_skip: list[str] = Field(default_factory=list)


class ResumeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resumption_no: int = Field(ge=0)


class AbortResponse(BaseModel):
    job_id: str
    requested: bool


class JobResponse(BaseModel):
    id: str
    kind: str
    status: str
    stage: str
    file_base: str
    resumption_count: int
    resume_interval_seconds: int
    task_data: dict[str, Any]
    run_times: dict[str, Any]
    useful_checkins: list[int]
    last_useful_checkin_at: datetime | None
    fail_on_resume: bool
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

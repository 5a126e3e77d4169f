from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from snapvault.db.models import JobKind, JobStage, JobStatus


@dataclass(slots=True)
class JobSnapshot:
    id: str
    kind: JobKind
    status: JobStatus
    stage: JobStage
    file_base: str
    resumption_count: int
    resume_interval_seconds: int
    task_data: dict[str, Any]
    run_times: dict[str, Any]
    runs_started: dict[str, Any]
    useful_checkins: list[int]
    last_useful_checkin_at: datetime | None
    fail_on_resume: bool
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED}

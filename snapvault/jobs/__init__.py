from snapvault.jobs.service import (
    InvalidJobStateError,
    JobNotFoundError,
    JobStateService,
    new_job_nonce,
    snapshot_to_dict,
)
from snapvault.jobs.types import JobSnapshot

__all__ = [
    "InvalidJobStateError",
    "JobNotFoundError",
    "JobSnapshot",
    "JobStateService",
    "new_job_nonce",
    "snapshot_to_dict",
]

from snapvault.scheduler.events import InvocationGuard, ProgressChannel, ProgressEvent, ProgressKind
from snapvault.scheduler.service import (
    ResumptionQueue,
    ResumptionSnapshot,
    Scheduler,
    abort_sentinel_path,
)

__all__ = [
    "InvocationGuard",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressKind",
    "ResumptionQueue",
    "ResumptionSnapshot",
    "Scheduler",
    "abort_sentinel_path",
]

from snapvault.worker.pipeline import (
    enqueue_backup,
    enqueue_restore,
    request_abort,
    run_due_resumptions,
)

__all__ = [
    "enqueue_backup",
    "enqueue_restore",
    "run_due_resumptions",
    "request_abort",
]

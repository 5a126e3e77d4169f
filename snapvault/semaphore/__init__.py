from snapvault.semaphore.service import SemaphoreService
from snapvault.semaphore.types import LockSnapshot

__all__ = [
    "SemaphoreService",
    "LockSnapshot",
]

from snapvault.restore.files import FilesRestoreError, FilesRestorer, FilesRestoreStats
from snapvault.restore.service import RestoreService

__all__ = [
    "FilesRestoreError",
    "FilesRestoreStats",
    "FilesRestorer",
    "RestoreService",
]

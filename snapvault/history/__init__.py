from snapvault.history.service import (
    BackupSetNotFoundError,
    HistoryService,
    history_snapshot_to_dict,
    parse_backup_filename,
)
from snapvault.history.types import BackupFileName, BackupSetSnapshot

__all__ = [
    "BackupFileName",
    "BackupSetNotFoundError",
    "BackupSetSnapshot",
    "HistoryService",
    "history_snapshot_to_dict",
    "parse_backup_filename",
]

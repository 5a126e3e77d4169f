from snapvault.backup.service import BackupService, site_slug

__all__ = [
    "BackupService",
    "site_slug",
]

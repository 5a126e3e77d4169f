from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from snapvault.db.models import BackupSetStatus


@dataclass(slots=True)
class BackupSetSnapshot:
    job_id: str
    timestamp: int
    file_base: str
    components: dict[str, list[str]]
    sizes: dict[str, int]
    total_size: int
    status: BackupSetStatus
    created_at: datetime

    @property
    def entities(self) -> list[str]:
        return sorted(self.components)

    def filenames(self) -> list[str]:
        return [name for entity in self.entities for name in self.components[entity]]


@dataclass(slots=True)
class BackupFileName:
    """One parsed ``backup_<date>_<site>_<nonce>-<component>[n].<ext>`` name."""

    file_base: str
    timestamp: int
    site: str
    nonce: str
    component: str
    index: int
    extension: str

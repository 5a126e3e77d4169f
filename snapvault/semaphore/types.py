from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from snapvault.db.models import LockState


@dataclass(slots=True)
class LockSnapshot:
    lock_name: str
    state: LockState
    holder_count: int
    last_refresh_at: datetime | None

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol


class ProgressKind(str, Enum):
    ARCHIVE_BATCH = "archive_batch"
    ARCHIVE_PART = "archive_part"
    TABLE_CHECKPOINT = "table_checkpoint"
    TABLE_DONE = "table_done"
    DUMP_STITCHED = "dump_stitched"
    TABLE_RESTORED = "table_restored"
    FILES_RESTORED = "files_restored"


@dataclass(slots=True)
class ProgressEvent:
    kind: ProgressKind
    entity: str
    detail: dict[str, Any] = field(default_factory=dict)


ProgressListener = Callable[[ProgressEvent], None]


class InvocationGuard(Protocol):
    def check_abort(self) -> None: ...

    def check_overlap(self, path: Path) -> None: ...


class ProgressChannel:
    """Fan-out of checkpoint events from workers to whoever owns timing policy."""

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

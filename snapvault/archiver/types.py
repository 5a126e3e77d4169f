from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class FileQueueEntry:
    absolute_path: Path
    stored_as: str
    size_bytes: int
    modified_time: float


@dataclass(slots=True)
class ArchivePart:
    entity: str
    sequence_index: int
    path: Path
    size_bytes: int
    manifest: dict[str, int] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        return self.path.name


@dataclass(slots=True)
class EnumerationResult:
    entries: list[FileQueueEntry]
    unchanged: list[FileQueueEntry]
    seconds: float
    from_cache: bool = False


def file_entry_to_dict(entry: FileQueueEntry) -> dict[str, object]:
    return {
        "absolute_path": entry.absolute_path.as_posix(),
        "stored_as": entry.stored_as,
        "size_bytes": entry.size_bytes,
        "modified_time": entry.modified_time,
    }


def file_entry_from_dict(raw: dict[str, object]) -> FileQueueEntry:
    return FileQueueEntry(
        absolute_path=Path(str(raw["absolute_path"])),
        stored_as=str(raw["stored_as"]),
        size_bytes=int(raw["size_bytes"]),  # type: ignore[arg-type]
        modified_time=float(raw["modified_time"]),  # type: ignore[arg-type]
    )

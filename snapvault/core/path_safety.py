from __future__ import annotations

from pathlib import Path, PurePosixPath


class PathSafetyError(ValueError):
    pass


def validate_archive_member(raw_path: str) -> PurePosixPath:
    normalized = raw_path.replace("\\", "/")
    if normalized.startswith("/") or (len(normalized) > 1 and normalized[1] == ":"):
        raise PathSafetyError(f"Archive member must be relative: {raw_path}")
    member = PurePosixPath(normalized)
    if ".." in member.parts:
        raise PathSafetyError(f"Path traversal is not allowed: {raw_path}")
    return member


def resolve_under_root(root: Path, raw_path: str) -> Path:
    member = validate_archive_member(raw_path)
    resolved_root = root.resolve(strict=False)
    candidate = (resolved_root / Path(*member.parts)).resolve(strict=False)

    if candidate == resolved_root or resolved_root in candidate.parents:
        return candidate

    raise PathSafetyError(f"Path escapes restore root: {raw_path}")

"""Path containment checks for paths supplied by the review UI."""

from __future__ import annotations

import posixpath
from pathlib import Path, PurePosixPath


def normalize_relative_path(file_path: str) -> str:
    """Collapse separators and dot segments, keeping POSIX separators."""
    return posixpath.normpath(file_path.strip().replace("\\", "/"))


def check_relative_path(file_path: str, root: str | Path) -> str | None:
    """Return an error message unless *file_path* stays inside *root*.

    Absolute paths and paths climbing out through ``..`` are rejected. The
    containment check uses Path.relative_to() rather than string prefixes so
    that sibling directories sharing a prefix (``/repo`` vs ``/repo-other``)
    are not accepted.
    """
    if not file_path or not file_path.strip():
        return "path is required"

    normalized = normalize_relative_path(file_path)
    if PurePosixPath(normalized).is_absolute() or Path(file_path.strip()).is_absolute():
        return "absolute paths are not allowed"
    if normalized == ".." or normalized.startswith("../"):
        return "parent directory references are not allowed"

    resolved_root = Path(root).resolve()
    candidate = (resolved_root / normalized).resolve()
    try:
        candidate.relative_to(resolved_root)
    except ValueError:
        return "only files under the target directory are accessible"
    return None

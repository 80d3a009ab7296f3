"""Path utilities for directory and file operations."""

from __future__ import annotations

from pathlib import Path, PurePosixPath


def find_files(
    root: Path,
    pattern: str = "*",
    recursive: bool = True,
    follow_symlinks: bool = False,
) -> list[Path]:
    """Find files matching pattern in directory, sorted for deterministic order."""
    if not root.is_dir():
        return []

    if recursive:
        matches = root.rglob(pattern)
    else:
        matches = root.glob(pattern)

    files = []
    for path in matches:
        if path.is_symlink() and not follow_symlinks:
            continue

        if path.is_file():
            files.append(path)

    return sorted(files)


def safe_relative_path(name: str) -> PurePosixPath:
    """Validate an archive member name and return it as a relative path.

    Raises:
        ValueError: If the name is absolute, empty, or escapes its root via ``..``
    """
    normalized = name.replace("\\", "/")
    member = PurePosixPath(normalized)
    if member.is_absolute() or normalized.startswith("/"):
        raise ValueError(f"Path traversal detected: absolute member path {name!r}")
    parts = [part for part in member.parts if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise ValueError(f"Path traversal detected: member {name!r} escapes its root")
    if not parts:
        raise ValueError(f"Empty member path {name!r}")
    return PurePosixPath(*parts)

"""Utility functions for Sitepipe.

This module contains filesystem helpers shared by the pipeline stages,
the revisioner and the development server.

Key functions:
    ensure_clean_dir: Ensure a directory exists and is empty.
    swap_dir: Replace a directory with a fully written staging directory.
    iter_files: List files below a directory as relative posix paths.
    matches_any: Glob matching against relative paths.
    format_size: Human-readable byte counts for stage reports.
"""

from __future__ import annotations

import shutil
from collections.abc import Iterable
from pathlib import Path, PurePosixPath


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    If the directory exists, removes all contents. Creates the
    directory if it doesn't exist.

    Args:
        path: Directory path to clean or create.
    """
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def remove_dir(path: Path) -> bool:
    """Remove a directory tree if it exists.

    Returns:
        True if something was removed.
    """
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True


def swap_dir(staging: Path, target: Path) -> None:
    """Move a fully written staging directory into place.

    The previous target is renamed aside first so that the target path never
    points at a half-written tree.

    Args:
        staging: Directory holding the new content.
        target: Directory to replace.
    """
    retired = target.with_name(target.name + ".old")
    if retired.exists():
        shutil.rmtree(retired)
    if target.exists():
        target.rename(retired)
    staging.rename(target)
    if retired.exists():
        shutil.rmtree(retired)


def iter_files(root: Path) -> list[str]:
    """List all files below ``root`` as sorted relative posix paths."""
    if not root.exists():
        return []
    return sorted(
        path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file()
    )


def matches_any(rel_path: str, patterns: Iterable[str]) -> bool:
    """Check a relative path against glob patterns.

    Patterns are matched from the right, so ``*.css`` matches at any depth
    while ``assets/*.css`` only matches directly inside ``assets``.

    Args:
        rel_path: Relative posix path.
        patterns: Glob patterns.

    Returns:
        True if any pattern matches.
    """
    path = PurePosixPath(rel_path)
    return any(path.match(pattern) for pattern in patterns)


def format_size(num_bytes: int) -> str:
    """Format a byte count for log output.

    Examples:
        >>> format_size(512)
        '512 B'

        >>> format_size(2048)
        '2.0 KiB'
    """
    if num_bytes < 1024:
        return f"{num_bytes} B"
    size = float(num_bytes)
    for unit in ("KiB", "MiB", "GiB"):
        size /= 1024
        if size < 1024 or unit == "GiB":
            break
    return f"{size:.1f} {unit}"

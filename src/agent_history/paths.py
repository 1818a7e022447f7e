"""Filesystem path comparison, project-name encoding, and bounded directory walks.

Working directories recorded in logs come from different shells, platforms and
symlink targets, so paths are canonicalised before they are compared:
long-path prefixes are stripped, separators unified, ``.``/``..`` resolved,
trailing separators dropped, and case folded on Windows.
"""

import logging
import ntpath
import os
import posixpath
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

_LONG_UNC_PREFIX = "\\\\?\\UNC\\"
_LONG_PREFIX = "\\\\?\\"

# Characters Claude Code replaces with "-" when naming a project directory
_PROJECT_NAME_CHARS = re.compile(r"[\\/:\s~_]")


def _is_windows(windows: bool | None) -> bool:
    return sys.platform == "win32" if windows is None else windows


def _strip_long_path_prefix(path: str) -> str:
    # \\?\UNC\server\share -> \\server\share
    if path.startswith(_LONG_UNC_PREFIX):
        return "\\\\" + path[len(_LONG_UNC_PREFIX):]
    # \\?\C:\path -> C:\path
    if path.startswith(_LONG_PREFIX):
        return path[len(_LONG_PREFIX):]
    return path


def normalize_fs_path(path, *, windows: bool | None = None) -> str:
    """Return a canonical form of ``path`` for comparison, or "" if unusable."""
    if not isinstance(path, str) or not path.strip():
        return ""

    win = _is_windows(windows)
    flavor = ntpath if win else posixpath
    normalized = path.strip()

    if win:
        normalized = _strip_long_path_prefix(normalized).replace("/", "\\")
    else:
        normalized = normalized.replace("\\", "/")

    try:
        normalized = flavor.abspath(flavor.normpath(normalized))
    except (ValueError, OSError):
        pass

    drive, rest = flavor.splitdrive(normalized)
    root_len = len(drive) + (1 if rest.startswith(flavor.sep) else 0)
    while len(normalized) > root_len and normalized.endswith(flavor.sep):
        normalized = normalized[:-1]

    if win:
        normalized = normalized.lower()

    return normalized


def is_path_same_or_inside(parent, candidate, *, windows: bool | None = None) -> bool:
    """True iff ``candidate`` is ``parent`` or lies beneath it on the same drive."""
    parent_norm = normalize_fs_path(parent, windows=windows)
    candidate_norm = normalize_fs_path(candidate, windows=windows)
    if not parent_norm or not candidate_norm:
        return False

    flavor = ntpath if _is_windows(windows) else posixpath
    try:
        relative = flavor.relpath(candidate_norm, parent_norm)
    except ValueError:
        # Different drives
        return False

    if relative == flavor.curdir:
        return True
    if flavor.isabs(relative):
        return False
    return relative.split(flavor.sep, 1)[0] != flavor.pardir


def paths_belong_to_same_project(project_path, session_cwd, *, windows: bool | None = None) -> bool:
    """Symmetric containment: either path may be a subdirectory of the other."""
    return (
        is_path_same_or_inside(project_path, session_cwd, windows=windows)
        or is_path_same_or_inside(session_cwd, project_path, windows=windows)
    )


def encode_project_name(path: str) -> str:
    """Encode an absolute path the way Claude Code names its project directories."""
    return _PROJECT_NAME_CHARS.sub("-", path)


def decode_project_name(name: str) -> str:
    """Naive inverse of :func:`encode_project_name` (dashes become separators)."""
    return name.replace("-", "/")


@dataclass
class WalkResult:
    files: list[Path] = field(default_factory=list)
    truncated: bool = False


def walk_files(
    root: Path,
    match: Callable[[str], bool],
    max_nodes: int = 20000,
) -> WalkResult:
    """Collect files under ``root`` whose name satisfies ``match``.

    Uses an explicit stack instead of recursion; stops after visiting
    ``max_nodes`` directory entries and reports that through ``truncated``.
    Unreadable directories are skipped.
    """
    result = WalkResult()
    stack = [root]
    visited = 0

    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.debug("Skipping unreadable directory %s: %s", current, e)
            continue

        subdirs = []
        for entry in entries:
            visited += 1
            if visited > max_nodes:
                logger.warning("Directory walk of %s stopped after %d entries", root, max_nodes)
                result.truncated = True
                return result
            try:
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(Path(entry.path))
                elif match(entry.name):
                    result.files.append(Path(entry.path))
            except OSError:
                continue
        # Reversed so the stack pops directories in name order
        stack.extend(reversed(subdirs))

    return result

"""Infer the real working directory behind a Claude project directory name.

Project directory names are lossy encodings of a path (every ``/``, ``_``,
space ... became ``-``), so the path is recovered from the ``cwd`` recorded in
the project's logs instead. Conversations get resumed from subdirectories or
symlink targets over a project's life: the most recent ``cwd`` wins when it
has a reasonable share of the history, otherwise the majority does.
"""

import logging
from pathlib import Path
from typing import Callable

from . import config
from .backends import claude_code
from .backends.claude_code import CwdTally
from .cache import ScanCache
from .core import ResolvedPath
from .paths import decode_project_name
from .project_config import ProjectConfigStore
from .provider import run_blocking

logger = logging.getLogger(__name__)


def choose_working_directory(
    tally: CwdTally,
    project_name: str,
    recent_min_share: float = config.RECENT_CWD_MIN_SHARE,
) -> ResolvedPath:
    """Pick the best path from a tally of recorded working directories."""
    counts = tally.counts
    if not counts:
        return ResolvedPath(decode_project_name(project_name), "decoded")

    if len(counts) == 1:
        return ResolvedPath(next(iter(counts)), "majority")

    max_count = max(counts.values())
    recent_count = counts.get(tally.latest_cwd, 0) if tally.latest_cwd else 0
    if tally.latest_cwd and recent_count >= max_count * recent_min_share:
        return ResolvedPath(tally.latest_cwd, "recent")

    # First value reaching the maximum, in the order values were first seen
    for cwd, count in counts.items():
        if count == max_count:
            return ResolvedPath(cwd, "majority")

    return ResolvedPath(tally.latest_cwd or decode_project_name(project_name), "recent")


class ProjectDirectoryResolver:
    """Resolve project names to paths, caching each answer until invalidated."""

    def __init__(
        self,
        projects_root: Callable[[], Path],
        project_config: ProjectConfigStore,
        cache: ScanCache | None = None,
        recent_min_share: float = config.RECENT_CWD_MIN_SHARE,
    ):
        self._projects_root = projects_root
        self._project_config = project_config
        self.cache = cache if cache is not None else ScanCache(ttl=None, name="project-path")
        self.recent_min_share = recent_min_share

    async def resolve(self, project_name: str) -> str:
        return (await self.resolve_with_source(project_name)).path

    async def resolve_with_source(self, project_name: str) -> ResolvedPath:
        return await self.cache.get_or_scan(project_name, lambda: self._resolve_uncached(project_name))

    def invalidate(self, project_name: str | None = None) -> None:
        self.cache.invalidate(project_name)

    async def _resolve_uncached(self, project_name: str) -> ResolvedPath:
        project_config = await self._project_config.load()
        entry = project_config.get(project_name)
        original_path = entry.get("originalPath") if isinstance(entry, dict) else None
        if original_path:
            return ResolvedPath(original_path, "config")

        project_dir = self._projects_root() / project_name
        try:
            tally = await run_blocking(claude_code.tally_working_directories, project_dir)
        except FileNotFoundError:
            return ResolvedPath(decode_project_name(project_name), "decoded")
        except OSError as e:
            logger.error("Error extracting project directory for %s: %s", project_name, e)
            return ResolvedPath(decode_project_name(project_name), "decoded")

        resolved = choose_working_directory(tally, project_name, self.recent_min_share)
        logger.debug("Resolved project %s to %s (%s)", project_name, resolved.path, resolved.source)
        return resolved

"""One read/write surface over every provider's conversation history.

:class:`HistoryStore` owns the providers, the project configuration file and
both caches (resolved project paths, Codex directory walks), so a process
normally creates exactly one and shares it.
"""

import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Callable

from . import config
from .backends import ClaudeCodeProvider, CodexProvider, CursorProvider, get_available_providers
from .cache import ScanCache
from .core import MessagePage, Project, SessionPage, TokenUsage
from .errors import ProjectConflictError, ProjectNotFoundError
from .paths import encode_project_name
from .project_config import ProjectConfigStore
from .provider import ChatProvider, run_blocking
from .resolver import ProjectDirectoryResolver

logger = logging.getLogger(__name__)


def _package_name(project_path: str) -> str | None:
    try:
        data = json.loads((Path(project_path) / "package.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    name = data.get("name") if isinstance(data, dict) else None
    return name if isinstance(name, str) and name else None


class HistoryStore:
    """Projects, sessions and messages across Claude Code, Codex and Cursor."""

    def __init__(
        self,
        claude_path: Path | None = None,
        codex_path: Path | None = None,
        cursor_path: Path | None = None,
        config_path: Path | None = None,
        *,
        summary_length: int = config.SUMMARY_MAX_LENGTH,
        recent_cwd_share: float = config.RECENT_CWD_MIN_SHARE,
        codex_scan_ttl: float = config.CODEX_SCAN_TTL_SECONDS,
        walk_limit: int = config.WALK_NODE_LIMIT,
        context_window: int = config.CLAUDE_CONTEXT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.claude = ClaudeCodeProvider(claude_path, summary_length, context_window)
        self.codex = CodexProvider(codex_path, summary_length, codex_scan_ttl, walk_limit, clock)
        self.cursor = CursorProvider(cursor_path)
        self.providers: dict[str, ChatProvider] = {
            p.name: p for p in (self.claude, self.codex, self.cursor)
        }
        self.project_config = ProjectConfigStore(config_path or config.get_project_config_path())
        self.path_cache = ScanCache(ttl=None, clock=clock, name="project-path")
        self.resolver = ProjectDirectoryResolver(
            self.claude.get_base_path, self.project_config, self.path_cache, recent_cwd_share,
        )

    def provider(self, name: str) -> ChatProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise ValueError(f"Unknown provider: {name}") from None

    def available_providers(self) -> list[str]:
        return get_available_providers(self.providers)

    def invalidate_project_path_cache(self) -> None:
        """Forget resolved project paths; call whenever log content changes."""
        self.resolver.invalidate()

    # ── Projects ─────────────────────────────────────────────────

    async def generate_display_name(self, project_name: str, project_path: str | None) -> str:
        path = project_path or project_name.replace("-", "/")
        name = await run_blocking(_package_name, path)
        if name:
            return name
        if path.startswith("/"):
            parts = [p for p in path.split("/") if p]
            return parts[-1] if parts else path
        return path

    async def list_projects(self) -> list[Project]:
        """Every Claude project directory plus manually added projects."""
        project_config = await self.project_config.load()
        names = await run_blocking(self.claude.list_project_names)

        projects = []
        for name in names:
            projects.append(await self._load_project(name, project_config.get(name) or {}))

        for name, entry in project_config.items():
            if name in names or not isinstance(entry, dict) or not entry.get("manuallyAdded"):
                continue
            projects.append(await self._load_project(name, entry))
        return projects

    async def _load_project(self, name: str, entry: dict) -> Project:
        path = await self.resolver.resolve(name)
        custom_name = entry.get("displayName")
        project = Project(
            name=name,
            path=path,
            display_name=custom_name or await self.generate_display_name(name, path),
            is_custom_name=bool(custom_name),
            is_manually_added=bool(entry.get("manuallyAdded")),
        )

        preview = config.PROJECT_PREVIEW_SESSIONS
        try:
            page = await self.claude.list_sessions(name, path, preview, 0)
            project.sessions = page.sessions
            project.session_meta = {"has_more": page.has_more, "total": page.total}
        except OSError as e:
            logger.warning("Could not load sessions for project %s: %s", name, e)

        for provider, attr in ((self.cursor, "cursor_sessions"), (self.codex, "codex_sessions")):
            try:
                page = await provider.list_sessions(name, path, preview, 0)
                setattr(project, attr, page.sessions)
            except OSError as e:
                logger.warning("Could not load %s sessions for project %s: %s", provider.name, name, e)
        return project

    async def rename_project(self, project_name: str, display_name: str | None) -> None:
        """Set a custom display name; an empty name restores the generated one."""
        async with self.project_config.mutation():
            project_config = await self.project_config.load()
            entry = dict(project_config.get(project_name) or {})
            if display_name and display_name.strip():
                entry["displayName"] = display_name.strip()
            else:
                entry.pop("displayName", None)

            if entry:
                project_config[project_name] = entry
            else:
                project_config.pop(project_name, None)
            await self.project_config.save(project_config)
        self.resolver.invalidate(project_name)

    async def add_project_manually(self, project_path: str, display_name: str | None = None) -> Project:
        """Track a directory that may have no Claude sessions yet."""
        absolute = os.path.abspath(os.path.expanduser(project_path))
        if not await run_blocking(os.path.exists, absolute):
            raise ProjectNotFoundError(f"Path does not exist: {absolute}")

        name = encode_project_name(absolute)
        async with self.project_config.mutation():
            project_config = await self.project_config.load()
            if name in project_config:
                raise ProjectConflictError(f"Project already configured for path: {absolute}")

            entry = {"manuallyAdded": True, "originalPath": absolute}
            if display_name:
                entry["displayName"] = display_name
            project_config[name] = entry
            await self.project_config.save(project_config)
        self.resolver.invalidate(name)
        logger.info("Added project %s (%s)", name, absolute)

        return Project(
            name=name,
            path=absolute,
            display_name=display_name or await self.generate_display_name(name, absolute),
            is_custom_name=bool(display_name),
            is_manually_added=True,
        )

    async def delete_project(self, project_name: str) -> None:
        """Remove a project with no remaining sessions, and its configuration."""
        page = await self.list_sessions(project_name, limit=1, offset=0)
        if page.total > 0:
            raise ProjectConflictError("Cannot delete project with existing sessions")

        project_dir = self.claude.project_dir(project_name)
        async with self.project_config.mutation():
            project_config = await self.project_config.load()
            has_dir = await run_blocking(project_dir.is_dir)
            if not has_dir and project_name not in project_config:
                raise ProjectNotFoundError(f"Project not found: {project_name}")

            if has_dir:
                await run_blocking(shutil.rmtree, project_dir)
            if project_config.pop(project_name, None) is not None:
                await self.project_config.save(project_config)
        self.resolver.invalidate(project_name)
        logger.info("Deleted project %s", project_name)

    # ── Sessions ─────────────────────────────────────────────────

    async def list_sessions(
        self,
        project_name: str,
        limit: int | None = 5,
        offset: int = 0,
        provider: str = "claude",
    ) -> SessionPage:
        """A page of a project's sessions for one provider, newest first."""
        backend = self.provider(provider)
        project_path = await self.resolver.resolve(project_name)
        return await backend.list_sessions(project_name, project_path, limit, offset)

    async def get_session_messages(
        self,
        session_id: str,
        provider: str = "claude",
        project_name: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> MessagePage:
        """Tail-relative page of a session's messages (offset 0 = newest)."""
        return await self.provider(provider).get_session_messages(session_id, project_name, limit, offset)

    async def delete_session(
        self,
        session_id: str,
        provider: str = "claude",
        project_name: str | None = None,
    ) -> None:
        await self.provider(provider).delete_session(session_id, project_name)
        if provider == "claude":
            # The deleted lines may have carried the project's working directories
            self.resolver.invalidate(project_name)

    async def get_token_usage(
        self,
        session_id: str,
        provider: str = "claude",
        project_name: str | None = None,
    ) -> TokenUsage:
        return await self.provider(provider).get_token_usage(session_id, project_name)

"""Abstract base class for conversation history providers."""

import asyncio
import functools
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from .core import MessagePage, SessionPage, TokenUsage


async def run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run blocking file or database work off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


class ChatProvider(ABC):
    """Base class for assistant log backends.

    Each backend (Claude Code, Codex, Cursor) implements this interface
    to provide unified access to its sessions and messages. Session IDs are
    only unique within one provider, so every lookup goes through the
    provider that issued the ID.
    """

    name: str  # "claude", "codex", "cursor"

    @abstractmethod
    def get_base_path(self) -> Path:
        """Return the root directory where this assistant stores its logs."""
        ...

    def is_available(self) -> bool:
        """Return True if this assistant's data exists on this machine."""
        return self.get_base_path().is_dir()

    @abstractmethod
    async def list_sessions(
        self,
        project_name: str,
        project_path: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> SessionPage:
        """Return sessions belonging to a project, newest first."""
        ...

    @abstractmethod
    async def get_session_messages(
        self,
        session_id: str,
        project_name: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> MessagePage:
        """Return a tail-relative page of a session's messages."""
        ...

    @abstractmethod
    async def delete_session(self, session_id: str, project_name: str | None = None) -> None:
        """Remove a session's log data; raises SessionNotFoundError if absent."""
        ...

    @abstractmethod
    async def get_token_usage(self, session_id: str, project_name: str | None = None) -> TokenUsage:
        """Return the latest cumulative token usage recorded for a session."""
        ...

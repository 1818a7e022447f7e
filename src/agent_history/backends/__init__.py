"""Provider registry: one backend per assistant family."""

from ..provider import ChatProvider
from .claude_code import ClaudeCodeProvider
from .codex import CodexProvider
from .cursor import CursorProvider

__all__ = ["ClaudeCodeProvider", "CodexProvider", "CursorProvider", "get_available_providers"]


def get_available_providers(providers: dict[str, ChatProvider]) -> list[str]:
    """Names of the providers whose data exists on this machine."""
    available = []
    for name, provider in providers.items():
        try:
            if provider.is_available():
                available.append(name)
        except OSError:
            continue
    return available

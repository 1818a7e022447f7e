"""Core data models for agent-history."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

PROVIDERS = ("claude", "codex", "cursor")


@dataclass
class ToolResult:
    """Output of a tool invocation, attached to the call that produced it."""

    content: str
    is_error: bool = False
    timestamp: Optional[datetime] = None


@dataclass
class Message:
    """A single message within a conversation."""

    role: str  # "user" | "assistant" | "tool" | "reasoning"
    content: str
    timestamp: Optional[datetime] = None
    message_type: str = "text"  # "text" | "tool_call" | "tool_result" | "thinking" | "error"
    tool_call_id: Optional[str] = None
    tool_result: Optional[ToolResult] = None
    metadata: dict = field(default_factory=dict)  # tool_name, tool_input, file_path


@dataclass
class Session:
    """One conversation thread with a provider."""

    id: str
    provider: str = "claude"
    summary: str = "New Session"
    message_count: int = 0
    last_activity: Optional[datetime] = None
    cwd: str = ""
    model: Optional[str] = None
    file_path: Optional[str] = None
    created_at: Optional[datetime] = None
    # Grouping annotations, only set on the visible member of a group
    is_grouped: bool = False
    group_size: int = 1
    group_sessions: list[str] = field(default_factory=list)
    # Parse-time bookkeeping for summary derivation
    last_user_message: Optional[str] = field(default=None, repr=False)
    last_assistant_message: Optional[str] = field(default=None, repr=False)


@dataclass
class SessionPage:
    sessions: list[Session]
    total: int
    has_more: bool
    offset: int = 0
    limit: Optional[int] = None


@dataclass
class MessagePage:
    messages: list[Message]
    total: int
    has_more: bool
    offset: int = 0
    limit: Optional[int] = None


@dataclass
class TokenUsage:
    used: int = 0
    total: int = 0
    breakdown: dict[str, int] = field(default_factory=dict)
    unsupported: bool = False


@dataclass
class ResolvedPath:
    """Best-guess working directory for a project, with where it came from."""

    path: str
    source: str  # "config" | "majority" | "recent" | "decoded"


@dataclass
class Project:
    """A filesystem directory with conversations across providers."""

    name: str
    path: str
    display_name: str
    is_custom_name: bool = False
    is_manually_added: bool = False
    sessions: list[Session] = field(default_factory=list)
    session_meta: dict[str, Any] = field(default_factory=dict)
    cursor_sessions: list[Session] = field(default_factory=list)
    codex_sessions: list[Session] = field(default_factory=list)


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 datetime string (or epoch milliseconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (ValueError, OSError, OverflowError):
            return None
    if not isinstance(value, str):
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_key(ts: Optional[datetime]) -> datetime:
    """Sort key treating a missing timestamp as the epoch."""
    return ts or EPOCH


def truncate(text: str, max_len: int) -> str:
    """Truncate to max_len characters, appending an ellipsis when cut."""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."

"""Platform-aware path resolution for assistant data directories, plus tunables."""

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def get_claude_code_path() -> Path:
    """Return the path to Claude Code's projects directory."""
    env = os.environ.get("AGENT_HISTORY_CLAUDE_PATH")
    if env:
        return Path(env)

    return Path.home() / ".claude" / "projects"


def get_codex_path() -> Path:
    """Return the path to Codex's nested sessions directory."""
    env = os.environ.get("AGENT_HISTORY_CODEX_PATH")
    if env:
        return Path(env)

    return Path.home() / ".codex" / "sessions"


def get_cursor_chats_path() -> Path:
    """Return the path to the Cursor CLI chats directory (one folder per project hash)."""
    env = os.environ.get("AGENT_HISTORY_CURSOR_PATH")
    if env:
        return Path(env)

    return Path.home() / ".cursor" / "chats"


def get_project_config_path() -> Path:
    """Return the path of the JSON file holding manual project metadata."""
    env = os.environ.get("AGENT_HISTORY_PROJECT_CONFIG")
    if env:
        return Path(env)

    return Path.home() / ".claude" / "project-config.json"


# Heuristics
SUMMARY_MAX_LENGTH = _env_int("AGENT_HISTORY_SUMMARY_LENGTH", 50)
RECENT_CWD_MIN_SHARE = _env_float("AGENT_HISTORY_RECENT_CWD_SHARE", 0.25)

# Scanning
CODEX_SCAN_TTL_SECONDS = _env_float("AGENT_HISTORY_CODEX_SCAN_TTL", 10.0)
WALK_NODE_LIMIT = _env_int("AGENT_HISTORY_WALK_LIMIT", 20000)
PROJECT_PREVIEW_SESSIONS = 5

# Token accounting
CLAUDE_CONTEXT_WINDOW = _env_int("CONTEXT_WINDOW", 160000)
CODEX_CONTEXT_WINDOW = 200000

"""Claude Code conversation history backend.

Reads ~/.claude/projects/<encoded-project-path>/*.jsonl. Each line is an
independent JSON record carrying ``sessionId``, ``uuid``/``parentUuid``,
``timestamp`` and usually ``cwd``. A file normally holds one session, but a
session can continue into other files of the same project.

JSONL entry types:
- "user": User messages. Content can be a string or array of blocks.
  May also contain tool_result blocks (responses from tool execution).
- "assistant": AI responses. Content is an array of text, thinking and/or
  tool_use blocks. A single line can produce multiple messages.
- "summary": Conversation title, keyed by sessionId or by ``leafUuid``.
- "file-history-snapshot", "progress", "system", "queue-operation": metadata only.
"""

import json
import logging
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .. import config
from ..aggregate import (
    link_tool_results,
    paginate_sessions,
    paginate_tail,
    sort_chronologically,
    visible_sessions,
)
from ..core import Message, MessagePage, Session, SessionPage, TokenUsage, ToolResult, parse_iso, truncate
from ..errors import SessionNotFoundError
from ..provider import ChatProvider, run_blocking

logger = logging.getLogger(__name__)

# User text that is CLI boilerplate rather than something the user typed
SYSTEM_MESSAGE_PREFIXES = (
    "<command-name>",
    "<command-message>",
    "<command-args>",
    "<local-command-stdout>",
    "<system-reminder>",
    "Caveat:",
    "This session is being continued from a previous",
    "Invalid API key",
)
SYSTEM_MESSAGE_MARKERS = (
    '{"subtasks":',
    "CRITICAL: You MUST respond with ONLY a JSON",
)
SYSTEM_MESSAGE_EXACT = ("Warmup",)

_SKIPPED_TYPES = ("file-history-snapshot", "progress", "system", "summary", "queue-operation")
_SAFE_SESSION_ID = re.compile(r"[^a-zA-Z0-9._-]")


def is_system_message(text: str) -> bool:
    """True for injected prompts, slash-command echoes and banners."""
    return (
        text.startswith(SYSTEM_MESSAGE_PREFIXES)
        or any(marker in text for marker in SYSTEM_MESSAGE_MARKERS)
        or text in SYSTEM_MESSAGE_EXACT
    )


def _is_system_assistant_message(text: str) -> bool:
    return text.startswith("Invalid API key") or any(m in text for m in SYSTEM_MESSAGE_MARKERS)


def iter_jsonl(path: Path) -> Iterator[dict]:
    """Yield each parseable JSON object in a JSONL file, skipping partial writes."""
    with path.open(encoding="utf-8", errors="replace") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as e:
                logger.debug("Bad JSON at %s:%d: %s", path, line_num, e)
                continue
            if isinstance(entry, dict):
                yield entry


def session_files(project_dir: Path, include_agents: bool = False) -> list[Path]:
    """List a project's JSONL logs; ``agent-*`` sidechain files only on request."""
    return [
        p for p in project_dir.glob("*.jsonl")
        if include_agents or not p.name.startswith("agent-")
    ]


# ── Session extraction ──────────────────────────────────────────


@dataclass
class FileScan:
    """Per-file partial result merged by the aggregator."""

    sessions: dict[str, Session] = field(default_factory=dict)
    # sessionId -> uuid of the session's first user message
    roots: dict[str, str] = field(default_factory=dict)


def _first_text(content) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                return block.get("text")
            if isinstance(block, dict) and block.get("type") == "tool_result":
                return None
    return None


def _last_assistant_text(content) -> str | None:
    if isinstance(content, str):
        return content
    text = None
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                text = block["text"]
    return text


def scan_session_file(path: Path, summary_length: int = config.SUMMARY_MAX_LENGTH) -> FileScan:
    """Build session summaries from one JSONL file."""
    scan = FileScan()
    pending_summaries: dict[str, str] = {}
    explicit_summary: set[str] = set()

    try:
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        for entry in iter_jsonl(path):
            entry_type = entry.get("type")
            session_id = entry.get("sessionId")

            if entry_type == "summary" and entry.get("summary") and not session_id and entry.get("leafUuid"):
                pending_summaries[entry["leafUuid"]] = entry["summary"]

            if not session_id:
                continue

            session = scan.sessions.get(session_id)
            if session is None:
                session = Session(id=session_id, provider="claude", file_path=str(path))
                scan.sessions[session_id] = session
            if not session.cwd and entry.get("cwd"):
                session.cwd = entry["cwd"]

            parent = entry.get("parentUuid")
            if session_id not in explicit_summary and parent in pending_summaries:
                session.summary = pending_summaries[parent]
                explicit_summary.add(session_id)

            if entry_type == "summary" and entry.get("summary"):
                session.summary = entry["summary"]
                explicit_summary.add(session_id)

            if (
                entry_type == "user"
                and "parentUuid" in entry
                and parent is None
                and entry.get("uuid")
            ):
                scan.roots.setdefault(session_id, entry["uuid"])

            message = entry.get("message")
            if isinstance(message, dict) and message.get("content"):
                role = message.get("role")
                if role == "user":
                    text = _first_text(message["content"])
                    if isinstance(text, str) and text and not is_system_message(text):
                        session.last_user_message = text
                elif role == "assistant" and entry.get("isApiErrorMessage") is not True:
                    text = _last_assistant_text(message["content"])
                    if text and not _is_system_assistant_message(text):
                        session.last_assistant_message = text

            session.message_count += 1
            ts = parse_iso(entry.get("timestamp"))
            if ts is not None:
                session.last_activity = ts
                if session.created_at is None:
                    session.created_at = ts
    except OSError as e:
        logger.warning("Failed to read JSONL %s: %s", path, e)
        return FileScan()

    for session_id, session in scan.sessions.items():
        if session.last_activity is None:
            session.last_activity = mtime
        if session_id not in explicit_summary:
            last = session.last_user_message or session.last_assistant_message
            if last:
                session.summary = truncate(last, summary_length)

    return scan


def merge_scans(scans: list[FileScan]) -> FileScan:
    """Merge per-file results; earlier (newer) files win on conflicts."""
    merged = FileScan()
    for scan in scans:
        for session_id, session in scan.sessions.items():
            merged.sessions.setdefault(session_id, session)
        for session_id, root in scan.roots.items():
            merged.roots.setdefault(session_id, root)
    return merged


# ── Working directory evidence ──────────────────────────────────


@dataclass
class CwdTally:
    counts: Counter = field(default_factory=Counter)
    latest_cwd: str | None = None
    latest_timestamp: float = 0.0


def tally_working_directories(project_dir: Path) -> CwdTally:
    """Count every ``cwd`` recorded under a project directory.

    Raises FileNotFoundError if the directory itself is missing; unreadable
    individual files are skipped.
    """
    tally = CwdTally()
    files = sorted(project_dir.glob("*.jsonl")) if project_dir.is_dir() else None
    if files is None:
        raise FileNotFoundError(project_dir)

    for path in files:
        try:
            for entry in iter_jsonl(path):
                cwd = entry.get("cwd")
                if not cwd or not isinstance(cwd, str):
                    continue
                tally.counts[cwd] += 1
                ts = parse_iso(entry.get("timestamp"))
                stamp = ts.timestamp() if ts else 0.0
                if stamp > tally.latest_timestamp:
                    tally.latest_timestamp = stamp
                    tally.latest_cwd = cwd
        except OSError as e:
            logger.warning("Skipping unreadable log %s: %s", path, e)
    return tally


# ── Message extraction ──────────────────────────────────────────


def _tool_result_text(tool_content) -> str:
    if isinstance(tool_content, list):
        # Content can be array of blocks (text, image, etc.)
        parts = []
        for sub in tool_content:
            if isinstance(sub, dict):
                sub_type = sub.get("type", "")
                if sub_type == "text":
                    parts.append(sub.get("text", ""))
                elif sub_type == "image":
                    parts.append("[Image]")
                elif sub.get("text"):
                    parts.append(sub["text"])
            elif isinstance(sub, str):
                parts.append(sub)
        tool_content = "\n".join(parts)
    return str(tool_content) if tool_content else "(empty result)"


def tool_call_summary(tool_name: str, tool_input) -> str:
    """Readable one-liner for a tool call, e.g. ``Read: /src/auth.ts``."""
    if not isinstance(tool_input, dict):
        return tool_name
    file_path = tool_input.get("file_path") or tool_input.get("path") or ""
    command = tool_input.get("command") or ""
    if file_path:
        return f"{tool_name}: {file_path}"
    if isinstance(command, str) and command:
        return f"{tool_name}: {truncate(command, 100)}"
    return tool_name


def entry_to_messages(entry: dict) -> list[Message]:
    """Convert a JSONL entry to a list of Messages.

    Returns an empty list for entries that should be skipped.
    A single entry can produce multiple messages (e.g. assistant text + tool calls).
    """
    entry_type = entry.get("type", "")
    if entry_type in _SKIPPED_TYPES:
        return []

    timestamp = parse_iso(entry.get("timestamp"))
    if entry_type in ("human", "user"):
        return _parse_user_entry(entry, timestamp)
    if entry_type == "assistant":
        return _parse_assistant_entry(entry, timestamp)
    return []


def _parse_user_entry(entry: dict, timestamp: datetime | None) -> list[Message]:
    """Parse a user entry: prompt text, tool_result blocks, or both."""
    msg_data = entry.get("message") or {}
    content = msg_data.get("content", [])

    if isinstance(content, str):
        if content.strip():
            return [Message(role="user", content=content, timestamp=timestamp)]
        return []

    messages = []
    text_parts = []
    for block in content if isinstance(content, list) else []:
        if isinstance(block, str):
            if block.strip():
                text_parts.append(block)
            continue
        if not isinstance(block, dict):
            continue

        block_type = block.get("type", "")
        if block_type == "text":
            text = block.get("text", "")
            if text.strip():
                text_parts.append(text)
        elif block_type == "tool_result":
            result = ToolResult(
                content=_tool_result_text(block.get("content", "")),
                is_error=bool(block.get("is_error", False)),
                timestamp=timestamp,
            )
            messages.append(Message(
                role="tool",
                content=result.content,
                timestamp=timestamp,
                message_type="tool_result",
                tool_call_id=block.get("tool_use_id") or None,
                tool_result=result,
            ))

    if text_parts:
        messages.insert(0, Message(role="user", content="\n".join(text_parts), timestamp=timestamp))
    return messages


def _parse_assistant_entry(entry: dict, timestamp: datetime | None) -> list[Message]:
    """Parse an assistant entry into text, reasoning and tool-call messages."""
    msg_data = entry.get("message") or {}
    content_blocks = msg_data.get("content", [])
    api_error = entry.get("isApiErrorMessage") is True
    text_type = "error" if api_error else "text"

    if isinstance(content_blocks, str):
        if content_blocks.strip():
            return [Message(role="assistant", content=content_blocks, timestamp=timestamp, message_type=text_type)]
        return []

    messages = []
    text_parts = []
    for block in content_blocks if isinstance(content_blocks, list) else []:
        if not isinstance(block, dict):
            continue

        block_type = block.get("type", "")
        if block_type == "text":
            text = block.get("text", "")
            if text.strip():
                text_parts.append(text)

        elif block_type == "tool_use":
            tool_name = block.get("name", "unknown")
            tool_input = block.get("input", {})
            messages.append(Message(
                role="tool",
                content=tool_call_summary(tool_name, tool_input),
                timestamp=timestamp,
                message_type="tool_call",
                tool_call_id=block.get("id") or None,
                metadata={
                    "tool_name": tool_name,
                    "tool_input": tool_input,
                    "file_path": tool_input.get("file_path", tool_input.get("path", ""))
                    if isinstance(tool_input, dict) else "",
                },
            ))

        elif block_type == "thinking":
            text = block.get("thinking", "")
            if text.strip():
                messages.append(Message(role="reasoning", content=text, timestamp=timestamp, message_type="thinking"))

    # Text goes before the tool calls of the same entry
    if text_parts:
        messages.insert(0, Message(
            role="assistant",
            content="\n".join(text_parts),
            timestamp=timestamp,
            message_type=text_type,
        ))
    return messages


def read_session_entries(files: list[Path], session_id: str) -> list[dict]:
    """Collect a session's entries across files, in file-scan order."""
    entries = []
    for path in files:
        try:
            entries.extend(e for e in iter_jsonl(path) if e.get("sessionId") == session_id)
        except OSError as e:
            logger.warning("Failed to read JSONL %s: %s", path, e)
    return entries


def build_messages(entries: list[dict]) -> list[Message]:
    """Sort entries chronologically and expand them into linked messages."""
    ordered = sort_chronologically(entries, key=lambda e: parse_iso(e.get("timestamp")))
    messages = []
    for entry in ordered:
        messages.extend(entry_to_messages(entry))
    return link_tool_results(messages)


# ── Token usage and deletion ────────────────────────────────────


def read_token_usage(path: Path, context_window: int = config.CLAUDE_CONTEXT_WINDOW) -> TokenUsage:
    """Context usage from the latest assistant record that reports usage.

    Usage values are cumulative for the request, so the file is scanned from
    the end and the first usage-bearing record wins.
    """
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    input_tokens = cache_creation = cache_read = 0

    for line in reversed(lines):
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            continue
        usage = (entry.get("message") or {}).get("usage")
        if isinstance(usage, dict):
            input_tokens = usage.get("input_tokens") or 0
            cache_creation = usage.get("cache_creation_input_tokens") or 0
            cache_read = usage.get("cache_read_input_tokens") or 0
            break

    return TokenUsage(
        used=input_tokens + cache_creation + cache_read,
        total=context_window,
        breakdown={"input": input_tokens, "cache_creation": cache_creation, "cache_read": cache_read},
    )


def strip_session_lines(path: Path, session_id: str) -> bytes | None:
    """Contents of ``path`` without the session's lines; None if it had none.

    Works on raw bytes so lines that are not valid UTF-8 survive untouched.
    """
    lines = [line for line in path.read_bytes().split(b"\n") if line.strip()]

    def belongs(line: bytes) -> bool:
        try:
            data = json.loads(line.decode("utf-8", errors="replace"))
        except json.JSONDecodeError:
            # Keep malformed lines
            return False
        return isinstance(data, dict) and data.get("sessionId") == session_id

    kept = [line for line in lines if not belongs(line)]
    if len(kept) == len(lines):
        return None
    return b"\n".join(kept) + (b"\n" if kept else b"")


def _files_by_mtime(project_dir: Path) -> list[Path]:
    stamped = []
    for path in session_files(project_dir):
        try:
            stamped.append((path.stat().st_mtime, path))
        except OSError:
            continue
    stamped.sort(key=lambda item: item[0], reverse=True)
    return [path for _, path in stamped]


class ClaudeCodeProvider(ChatProvider):
    """Provider for Claude Code conversation logs."""

    name = "claude"

    def __init__(
        self,
        base_path: Path | None = None,
        summary_length: int = config.SUMMARY_MAX_LENGTH,
        context_window: int = config.CLAUDE_CONTEXT_WINDOW,
    ):
        self._base_path = Path(base_path) if base_path else None
        self.summary_length = summary_length
        self.context_window = context_window

    def get_base_path(self) -> Path:
        return self._base_path or config.get_claude_code_path()

    def project_dir(self, project_name: str) -> Path:
        return self.get_base_path() / project_name

    def list_project_names(self) -> list[str]:
        """Directory names under the projects root (blocking)."""
        base = self.get_base_path()
        try:
            return sorted(entry.name for entry in os.scandir(base) if entry.is_dir())
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Cannot list Claude projects in %s: %s", base, e)
            return []

    def find_project_name(self, session_id: str) -> str | None:
        """Project directory holding `<session_id>.jsonl` (blocking)."""
        safe_id = _SAFE_SESSION_ID.sub("", session_id)
        if not safe_id:
            return None
        for path in sorted(self.get_base_path().glob(f"*/{safe_id}.jsonl")):
            return path.parent.name
        return None

    async def _require_project(self, session_id: str, project_name: str | None) -> str:
        if not project_name:
            project_name = await run_blocking(self.find_project_name, session_id)
        if not project_name:
            raise SessionNotFoundError(session_id, self.name)
        return project_name

    async def list_sessions(
        self,
        project_name: str,
        project_path: str = "",
        limit: int | None = None,
        offset: int = 0,
    ) -> SessionPage:
        project_dir = self.project_dir(project_name)
        try:
            files = await run_blocking(_files_by_mtime, project_dir)
        except OSError as e:
            logger.warning("Cannot read sessions for project %s: %s", project_name, e)
            files = []
        if not files:
            return SessionPage(sessions=[], total=0, has_more=False, offset=offset, limit=limit)

        scans = []
        collected: set[str] = set()
        wanted = (limit + offset) * 2 if limit is not None else None
        for index, path in enumerate(files, 1):
            scan = await run_blocking(scan_session_file, path, self.summary_length)
            scans.append(scan)
            collected.update(scan.sessions)
            # Enough candidates: older files rarely change the first pages
            if wanted is not None and len(collected) >= wanted and index >= min(3, len(files)):
                logger.debug("Stopped session scan of %s after %d/%d files", project_name, index, len(files))
                break

        merged = merge_scans(scans)
        shown = visible_sessions(list(merged.sessions.values()), merged.roots)
        return paginate_sessions(shown, limit, offset)

    async def get_session_messages(
        self,
        session_id: str,
        project_name: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> MessagePage:
        project_dir = self.project_dir(await self._require_project(session_id, project_name))
        files = await run_blocking(lambda: sorted(session_files(project_dir)) if project_dir.is_dir() else [])
        entries = await run_blocking(read_session_entries, files, session_id)
        if not entries:
            raise SessionNotFoundError(session_id, self.name)

        messages = build_messages(entries)
        return paginate_tail(messages, limit, offset)

    async def delete_session(self, session_id: str, project_name: str | None = None) -> None:
        project_dir = self.project_dir(await self._require_project(session_id, project_name))

        def _delete() -> bool:
            if not project_dir.is_dir():
                return False
            # Read every file before rewriting any of them
            rewrites = []
            for path in sorted(project_dir.glob("*.jsonl")):
                content = strip_session_lines(path, session_id)
                if content is not None:
                    rewrites.append((path, content))
            for path, content in rewrites:
                path.write_bytes(content)
                logger.info("Removed session %s from %s", session_id, path)
            return bool(rewrites)

        if not await run_blocking(_delete):
            raise SessionNotFoundError(session_id, self.name)

    async def get_token_usage(self, session_id: str, project_name: str | None = None) -> TokenUsage:
        safe_id = _SAFE_SESSION_ID.sub("", session_id)
        if not safe_id:
            raise SessionNotFoundError(session_id, self.name)

        project_name = await self._require_project(session_id, project_name)
        path = self.project_dir(project_name) / f"{safe_id}.jsonl"
        try:
            return await run_blocking(read_token_usage, path, self.context_window)
        except FileNotFoundError:
            raise SessionNotFoundError(session_id, self.name) from None

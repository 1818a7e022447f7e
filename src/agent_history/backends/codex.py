"""Codex CLI conversation history backend.

Reads ~/.codex/sessions/YYYY/MM/DD/rollout-<timestamp>-<session-id>.jsonl.
Every line is a tagged record ``{"timestamp", "type", "payload"}``:

- "session_meta": session id, working directory, model
- "event_msg": user_message (the prompt as typed), token_count, agent events
- "response_item": message / reasoning / function_call / function_call_output /
  custom_tool_call / custom_tool_call_output

Records are first classified into :class:`CodexRecord` variants and then
normalised into the shared :class:`~agent_history.core.Message` shape.
"""

import enum
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .. import config
from ..aggregate import link_tool_results, paginate_sessions, paginate_tail, sort_chronologically
from ..cache import ScanCache
from ..core import Message, MessagePage, Session, SessionPage, TokenUsage, ToolResult, parse_iso, sort_key, truncate
from ..errors import SessionNotFoundError
from ..paths import WalkResult, paths_belong_to_same_project, walk_files
from ..provider import ChatProvider, run_blocking
from ..tools import canonical_tool_name, patch_to_edit
from .claude_code import iter_jsonl, tool_call_summary

logger = logging.getLogger(__name__)

# Injected context blocks that Codex records as user messages
_INJECTED_MARKERS = ("<environment_context>", "<user_instructions>")


class RecordKind(enum.Enum):
    SESSION_META = "session_meta"
    USER_MESSAGE = "user_message"
    ASSISTANT_TEXT = "assistant_text"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOKEN_COUNT = "token_count"


@dataclass
class CodexRecord:
    kind: RecordKind
    timestamp: str | None = None
    text: str = ""
    call_id: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    data: dict = field(default_factory=dict)


def _extract_text(content) -> str:
    """Join the text items of a Codex content array."""
    if not isinstance(content, list):
        return content if isinstance(content, str) else ""
    parts = []
    for item in content:
        if isinstance(item, dict) and item.get("type") in ("input_text", "output_text", "text"):
            if item.get("text"):
                parts.append(item["text"])
    return "\n".join(parts)


def _is_injected(text: str) -> bool:
    return any(marker in text for marker in _INJECTED_MARKERS)


def _function_call(payload: dict) -> tuple[str, Any]:
    name = payload.get("name") or "unknown"
    arguments = payload.get("arguments")
    try:
        tool_input = json.loads(arguments) if isinstance(arguments, str) else arguments
    except json.JSONDecodeError:
        tool_input = arguments

    canonical = canonical_tool_name(name)
    if canonical == "Bash" and isinstance(tool_input, dict):
        command = tool_input.get("command")
        if isinstance(command, list):
            command = " ".join(str(part) for part in command)
        tool_input = {"command": command}
    elif canonical == "Edit" and isinstance(tool_input, dict) and isinstance(tool_input.get("input"), str):
        tool_input = patch_to_edit(tool_input["input"])
    return canonical, tool_input


def _tool_output(output) -> str:
    if isinstance(output, str):
        try:
            decoded = json.loads(output)
        except json.JSONDecodeError:
            return output
        if isinstance(decoded, dict) and isinstance(decoded.get("output"), str):
            return decoded["output"]
        return output
    if output is None:
        return ""
    return json.dumps(output)


def classify(entry: dict) -> CodexRecord | None:
    """Map one raw JSONL record onto a :class:`CodexRecord`, or None to skip it."""
    entry_type = entry.get("type")
    payload = entry.get("payload")
    if not isinstance(payload, dict):
        return None
    ts = entry.get("timestamp")
    payload_type = payload.get("type")

    if entry_type == "session_meta":
        return CodexRecord(RecordKind.SESSION_META, ts, data=payload)

    if entry_type == "event_msg":
        if payload_type == "user_message" and payload.get("message"):
            return CodexRecord(RecordKind.USER_MESSAGE, ts, text=str(payload["message"]))
        if payload_type == "token_count" and isinstance(payload.get("info"), dict):
            return CodexRecord(RecordKind.TOKEN_COUNT, ts, data=payload["info"])
        return None

    if entry_type != "response_item":
        return None

    if payload_type == "message":
        role = payload.get("role") or "assistant"
        text = _extract_text(payload.get("content"))
        if role == "user":
            return CodexRecord(RecordKind.USER_MESSAGE, ts, text=text)
        if role == "assistant":
            return CodexRecord(RecordKind.ASSISTANT_TEXT, ts, text=text)
        # developer / system instructions
        return None

    if payload_type == "reasoning":
        summary = payload.get("summary") or []
        text = "\n".join(
            s.get("text", "") for s in summary if isinstance(s, dict) and s.get("text")
        )
        return CodexRecord(RecordKind.REASONING, ts, text=text)

    if payload_type == "function_call":
        name, tool_input = _function_call(payload)
        return CodexRecord(RecordKind.TOOL_CALL, ts, call_id=payload.get("call_id"), tool_name=name, tool_input=tool_input)

    if payload_type == "custom_tool_call":
        name = payload.get("name") or "custom_tool"
        raw_input = payload.get("input") or ""
        if name == "apply_patch":
            return CodexRecord(
                RecordKind.TOOL_CALL, ts,
                call_id=payload.get("call_id"),
                tool_name="Edit",
                tool_input=patch_to_edit(raw_input),
            )
        return CodexRecord(
            RecordKind.TOOL_CALL, ts,
            call_id=payload.get("call_id"),
            tool_name=canonical_tool_name(name),
            tool_input=raw_input,
        )

    if payload_type in ("function_call_output", "custom_tool_call_output"):
        return CodexRecord(
            RecordKind.TOOL_RESULT, ts,
            call_id=payload.get("call_id"),
            text=_tool_output(payload.get("output")),
        )

    return None


def _dedup_key(record: CodexRecord) -> tuple:
    if record.kind is RecordKind.TOOL_CALL:
        return ("tool_call", record.timestamp, record.tool_name, record.call_id)
    if record.kind is RecordKind.TOOL_RESULT:
        return ("tool_result", record.timestamp, record.call_id)
    role = "user" if record.kind is RecordKind.USER_MESSAGE else record.kind.value
    return (role, record.timestamp, record.text)


def record_to_message(record: CodexRecord) -> Message | None:
    """Normalise a content-bearing record into a Message."""
    timestamp = parse_iso(record.timestamp)

    if record.kind is RecordKind.USER_MESSAGE:
        if not record.text.strip() or _is_injected(record.text):
            return None
        return Message(role="user", content=record.text, timestamp=timestamp)

    if record.kind is RecordKind.ASSISTANT_TEXT:
        if not record.text.strip() or _is_injected(record.text):
            return None
        return Message(role="assistant", content=record.text, timestamp=timestamp)

    if record.kind is RecordKind.REASONING:
        if not record.text.strip():
            return None
        return Message(role="reasoning", content=record.text, timestamp=timestamp, message_type="thinking")

    if record.kind is RecordKind.TOOL_CALL:
        return Message(
            role="tool",
            content=tool_call_summary(record.tool_name, record.tool_input),
            timestamp=timestamp,
            message_type="tool_call",
            tool_call_id=record.call_id,
            metadata={"tool_name": record.tool_name, "tool_input": record.tool_input},
        )

    if record.kind is RecordKind.TOOL_RESULT:
        result = ToolResult(content=record.text, timestamp=timestamp)
        return Message(
            role="tool",
            content=record.text,
            timestamp=timestamp,
            message_type="tool_result",
            tool_call_id=record.call_id,
            tool_result=result,
        )

    return None


def parse_codex_messages(path: Path) -> list[Message]:
    """Read a Codex rollout file into chronologically ordered, linked messages."""
    messages = []
    seen: set[tuple] = set()
    for entry in iter_jsonl(path):
        record = classify(entry)
        if record is None:
            continue
        key = _dedup_key(record)
        if key in seen:
            continue
        message = record_to_message(record)
        if message is None:
            continue
        seen.add(key)
        messages.append(message)
    return link_tool_results(sort_chronologically(messages))


def parse_codex_session_file(path: Path, summary_length: int = config.SUMMARY_MAX_LENGTH) -> Session | None:
    """Session summary of one rollout file; None if it has no session_meta."""
    meta: dict | None = None
    meta_timestamp = None
    last_timestamp = None
    last_user_message = None
    message_count = 0

    try:
        for entry in iter_jsonl(path):
            if entry.get("timestamp"):
                last_timestamp = entry["timestamp"]
            record = classify(entry)
            if record is None:
                continue
            if record.kind is RecordKind.SESSION_META:
                meta = record.data
                meta_timestamp = record.timestamp
            elif record.kind is RecordKind.USER_MESSAGE and entry.get("type") == "event_msg":
                message_count += 1
                last_user_message = record.text
            elif record.kind is RecordKind.ASSISTANT_TEXT:
                message_count += 1
    except OSError as e:
        logger.warning("Could not parse Codex session file %s: %s", path, e)
        return None

    if meta is None or not meta.get("id"):
        return None

    return Session(
        id=meta["id"],
        provider="codex",
        summary=truncate(last_user_message, summary_length) if last_user_message else "Codex Session",
        message_count=message_count,
        last_activity=parse_iso(last_timestamp or meta_timestamp),
        created_at=parse_iso(meta.get("timestamp") or meta_timestamp),
        cwd=meta.get("cwd") or "",
        model=meta.get("model") or meta.get("model_provider"),
        file_path=str(path),
    )


def read_codex_token_usage(path: Path) -> TokenUsage:
    """Latest cumulative usage: the last token_count event in the file."""
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    for line in reversed(lines):
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        record = classify(entry) if isinstance(entry, dict) else None
        if record is None or record.kind is not RecordKind.TOKEN_COUNT:
            continue
        totals = record.data.get("total_token_usage") or {}
        return TokenUsage(
            used=totals.get("total_tokens") or 0,
            total=record.data.get("model_context_window") or config.CODEX_CONTEXT_WINDOW,
        )
    return TokenUsage(used=0, total=config.CODEX_CONTEXT_WINDOW)


def _signatures(files: list[Path]) -> list[tuple[Path, tuple[int, int]]]:
    signed = []
    for path in files:
        try:
            st = path.stat()
        except OSError:
            continue
        signed.append((path, (st.st_mtime_ns, st.st_size)))
    return signed


class CodexProvider(ChatProvider):
    """Provider for Codex CLI rollout logs."""

    name = "codex"

    def __init__(
        self,
        base_path: Path | None = None,
        summary_length: int = config.SUMMARY_MAX_LENGTH,
        scan_ttl: float = config.CODEX_SCAN_TTL_SECONDS,
        walk_limit: int = config.WALK_NODE_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._base_path = Path(base_path) if base_path else None
        self.summary_length = summary_length
        self.walk_limit = walk_limit
        self.walk_cache = ScanCache(ttl=scan_ttl, clock=clock, name="codex-walk")
        # path -> ((mtime_ns, size), parsed summary)
        self._summaries: dict[Path, tuple[tuple[int, int], Session | None]] = {}

    def get_base_path(self) -> Path:
        return self._base_path or config.get_codex_path()

    async def walk(self) -> WalkResult:
        """All rollout files under the sessions root, cached for a few seconds."""
        root = self.get_base_path()
        return await self.walk_cache.get_or_scan(
            str(root),
            lambda: run_blocking(walk_files, root, lambda name: name.endswith(".jsonl"), self.walk_limit),
        )

    async def all_sessions(self) -> list[Session]:
        walk = await self.walk()
        signed = await run_blocking(_signatures, walk.files)
        live = set()
        sessions = []
        for path, signature in signed:
            live.add(path)
            cached = self._summaries.get(path)
            if cached is None or cached[0] != signature:
                session = await run_blocking(parse_codex_session_file, path, self.summary_length)
                cached = (signature, session)
                self._summaries[path] = cached
            if cached[1] is not None:
                sessions.append(cached[1])
        for stale in set(self._summaries) - live:
            del self._summaries[stale]
        return sessions

    async def list_sessions(
        self,
        project_name: str,
        project_path: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> SessionPage:
        matching = [
            s for s in await self.all_sessions()
            if paths_belong_to_same_project(project_path, s.cwd)
        ]
        matching.sort(key=lambda s: sort_key(s.last_activity), reverse=True)
        return paginate_sessions(matching, limit, offset)

    async def find_session_file(self, session_id: str) -> Path:
        """Locate the rollout file whose ``session_meta`` ID equals ``session_id``."""
        if not session_id:
            raise SessionNotFoundError(session_id, self.name)
        for attempt in range(2):
            if attempt:
                # The file may be newer than the cached walk
                self.walk_cache.invalidate()
            for session in await self.all_sessions():
                if session.id == session_id and session.file_path:
                    return Path(session.file_path)
        raise SessionNotFoundError(session_id, self.name)

    async def get_session_messages(
        self,
        session_id: str,
        project_name: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> MessagePage:
        path = await self.find_session_file(session_id)
        try:
            messages = await run_blocking(parse_codex_messages, path)
        except FileNotFoundError:
            raise SessionNotFoundError(session_id, self.name) from None
        return paginate_tail(messages, limit, offset)

    async def delete_session(self, session_id: str, project_name: str | None = None) -> None:
        path = await self.find_session_file(session_id)
        try:
            await run_blocking(path.unlink)
        except FileNotFoundError:
            raise SessionNotFoundError(session_id, self.name) from None
        finally:
            self._summaries.pop(path, None)
            self.walk_cache.invalidate()
        logger.info("Deleted Codex session %s (%s)", session_id, path)

    async def get_token_usage(self, session_id: str, project_name: str | None = None) -> TokenUsage:
        path = await self.find_session_file(session_id)
        try:
            return await run_blocking(read_codex_token_usage, path)
        except FileNotFoundError:
            raise SessionNotFoundError(session_id, self.name) from None

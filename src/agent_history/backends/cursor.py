"""Cursor CLI chat history backend.

Reads ~/.cursor/chats/<md5 of project path>/<session id>/store.db. Each
session is a small SQLite database with two tables:

- ``meta(key, value)``: values are usually hex-encoded JSON (title, createdAt ...)
- ``blobs(id, data)``: the conversation, one JSON message record per blob

The project path is not stored anywhere in the database, only in the hash of
the directory name, so sessions are found from an already known project path.
All database access is read-only.
"""

import hashlib
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from .. import config
from ..aggregate import link_tool_results, paginate_sessions, paginate_tail
from ..core import Message, MessagePage, Session, SessionPage, TokenUsage, ToolResult, parse_iso, sort_key
from ..errors import SessionNotFoundError
from ..provider import ChatProvider, run_blocking
from ..tools import canonical_tool_name
from .claude_code import tool_call_summary

logger = logging.getLogger(__name__)

_HEX = re.compile(r"^[0-9a-fA-F]+$")
_USER_QUERY = re.compile(r"<user_query>\s*(.*?)\s*</user_query>", re.DOTALL)
_SESSION_ID = re.compile(r"[A-Za-z0-9._-]+")

_TOOL_CALL_TYPES = ("tool-call", "tool_call", "tool_use")
_TOOL_RESULT_TYPES = ("tool-result", "tool_result")
_REASONING_TYPES = ("reasoning", "thinking", "redacted-reasoning")


def cursor_project_hash(project_path: str) -> str:
    """Directory name Cursor derives from a project's absolute path."""
    absolute = os.path.abspath(project_path) if project_path else ""
    return hashlib.md5(absolute.encode("utf-8")).hexdigest()


def decode_meta_value(value: Any) -> Any:
    """Decode a ``meta`` value: hex-encoded JSON when possible, else text."""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        return value
    if _HEX.match(value) and len(value) % 2 == 0:
        try:
            return json.loads(bytes.fromhex(value).decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            return value
    return value


def flatten_metadata(rows) -> dict:
    """Turn ``meta`` rows into one dict; object values also expose their keys."""
    metadata: dict = {}
    nested: dict = {}
    for key, value in rows:
        if value is None:
            continue
        decoded = decode_meta_value(value)
        metadata[key] = decoded
        if isinstance(decoded, dict):
            nested.update(decoded)
    for key, value in nested.items():
        metadata.setdefault(key, value)
    return metadata


def decode_blob(data: Any) -> dict | None:
    """Decode one blob into a JSON record, or None for binary/partial blobs."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    if not isinstance(data, (bytes, bytearray)):
        return None
    start = data.find(b"{")
    if start < 0:
        return None
    try:
        record = json.loads(bytes(data[start:]).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return record if isinstance(record, dict) else None


@dataclass
class BlobRecord:
    record: dict
    row_order: int | None = None

    @property
    def body(self) -> dict:
        """The role/content part, unwrapping ``{"message": {...}}`` records."""
        inner = self.record.get("message")
        if isinstance(inner, dict) and ("role" in inner or "content" in inner):
            return inner
        return self.record

    @property
    def sequence(self) -> int | None:
        for source in (self.record, self.body):
            for key in ("sequence", "seq"):
                value = source.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    return value
        return None

    @property
    def timestamp(self) -> datetime | None:
        for source in (self.record, self.body):
            for key in ("timestamp", "createdAt", "time"):
                ts = parse_iso(source.get(key))
                if ts is not None:
                    return ts
        return None


def order_blobs(blobs: list[BlobRecord]) -> list[BlobRecord]:
    """Sequence number when every blob has one, else row order, else timestamp."""
    if blobs and all(b.sequence is not None for b in blobs):
        return sorted(blobs, key=lambda b: (b.sequence, b.row_order or 0))
    if all(b.row_order is not None for b in blobs):
        return sorted(blobs, key=lambda b: b.row_order)
    return sorted(blobs, key=lambda b: sort_key(b.timestamp))


def _user_text(text: str) -> str:
    match = _USER_QUERY.search(text)
    return match.group(1) if match else text


def _result_text(part: dict) -> str:
    for key in ("result", "output", "content"):
        value = part.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            texts = [v.get("text", "") for v in value if isinstance(v, dict) and v.get("text")]
            if texts:
                return "\n".join(texts)
        return json.dumps(value)
    return "(empty result)"


def blob_to_messages(blob: BlobRecord) -> list[Message]:
    """Normalise one message record into Messages.

    Handles plain ``{"role", "content"}`` records, ``{"message": {...}}``
    wrappers, and content arrays carrying tool-call / tool-result parts.
    """
    body = blob.body
    role = body.get("role")
    content = body.get("content")
    timestamp = blob.timestamp

    if role == "system" or content is None:
        return []

    if isinstance(content, str):
        parts = [{"type": "text", "text": content}]
    elif isinstance(content, list):
        parts = content
    else:
        return []

    messages = []
    text_parts = []
    for part in parts:
        if isinstance(part, str):
            part = {"type": "text", "text": part}
        if not isinstance(part, dict):
            continue
        part_type = part.get("type", "text")

        if part_type == "text":
            text = part.get("text") or ""
            if role == "user":
                text = _user_text(text)
            if text.strip():
                text_parts.append(text)

        elif part_type in _REASONING_TYPES:
            text = part.get("text") or part.get("reasoning") or ""
            if text.strip():
                messages.append(Message(role="reasoning", content=text, timestamp=timestamp, message_type="thinking"))

        elif part_type in _TOOL_CALL_TYPES:
            tool_name = canonical_tool_name(part.get("toolName") or part.get("name") or "")
            tool_input = part.get("args", part.get("input", {}))
            messages.append(Message(
                role="tool",
                content=tool_call_summary(tool_name, tool_input),
                timestamp=timestamp,
                message_type="tool_call",
                tool_call_id=part.get("toolCallId") or part.get("id") or None,
                metadata={
                    "tool_name": tool_name,
                    "tool_input": tool_input,
                    "original_tool_name": part.get("toolName") or part.get("name"),
                },
            ))

        elif part_type in _TOOL_RESULT_TYPES:
            result = ToolResult(
                content=_result_text(part),
                is_error=bool(part.get("isError") or part.get("is_error")),
                timestamp=timestamp,
            )
            messages.append(Message(
                role="tool",
                content=result.content,
                timestamp=timestamp,
                message_type="tool_result",
                tool_call_id=part.get("toolCallId") or part.get("tool_use_id") or None,
                tool_result=result,
                metadata={"tool_name": canonical_tool_name(part.get("toolName") or "")},
            ))

    if text_parts and role in ("user", "assistant"):
        messages.insert(0, Message(role=role, content="\n".join(text_parts), timestamp=timestamp))
    return messages


def _connect_readonly(db_path: Path):
    return aiosqlite.connect(f"{db_path.absolute().as_uri()}?mode=ro", uri=True)


async def read_store_summary(db_path: Path) -> tuple[dict, int]:
    """Metadata and blob count of one session store."""
    async with _connect_readonly(db_path) as db:
        meta_rows = await db.execute_fetchall("SELECT key, value FROM meta")
        count_rows = await db.execute_fetchall("SELECT COUNT(*) FROM blobs")
    count = list(count_rows)[0][0] if count_rows else 0
    return flatten_metadata(meta_rows), count or 0


async def read_store_blobs(db_path: Path) -> list[BlobRecord]:
    """Every decodable blob of a session store, in storage order."""
    async with _connect_readonly(db_path) as db:
        try:
            rows = await db.execute_fetchall("SELECT rowid, data FROM blobs")
            blobs = [(rowid, data) for rowid, data in rows]
        except aiosqlite.OperationalError:
            # WITHOUT ROWID tables expose no row order
            rows = await db.execute_fetchall("SELECT data FROM blobs")
            blobs = [(None, row[0]) for row in rows]

    records = []
    for row_order, data in blobs:
        record = decode_blob(data)
        if record is not None:
            records.append(BlobRecord(record, row_order))
    return records


def _created_at(metadata: dict, mtime: float | None) -> datetime:
    created = parse_iso(metadata.get("createdAt"))
    if created is not None:
        return created
    if mtime is not None:
        return datetime.fromtimestamp(mtime, tz=timezone.utc)
    return datetime.now(timezone.utc)


def _store_paths(chats_dir: Path) -> list[tuple[str, Path, float | None]]:
    found = []
    try:
        entries = sorted(os.scandir(chats_dir), key=lambda e: e.name)
    except FileNotFoundError:
        return []
    for entry in entries:
        db_path = Path(entry.path) / "store.db"
        if not entry.is_dir() or not db_path.is_file():
            continue
        try:
            mtime = db_path.stat().st_mtime
        except OSError:
            mtime = None
        found.append((entry.name, db_path, mtime))
    return found


class CursorProvider(ChatProvider):
    """Provider for Cursor CLI chat stores."""

    name = "cursor"

    def __init__(self, base_path: Path | None = None):
        self._base_path = Path(base_path) if base_path else None

    def get_base_path(self) -> Path:
        return self._base_path or config.get_cursor_chats_path()

    def chats_dir(self, project_path: str) -> Path:
        return self.get_base_path() / cursor_project_hash(project_path)

    async def list_sessions(
        self,
        project_name: str,
        project_path: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> SessionPage:
        try:
            stores = await run_blocking(_store_paths, self.chats_dir(project_path))
        except OSError as e:
            logger.warning("Cannot list Cursor sessions for %s: %s", project_path, e)
            stores = []

        sessions = []
        for session_id, db_path, mtime in stores:
            try:
                metadata, blob_count = await read_store_summary(db_path)
            except (aiosqlite.Error, OSError) as e:
                logger.warning("Could not read Cursor session %s: %s", session_id, e)
                continue
            created = _created_at(metadata, mtime)
            title = metadata.get("title") or metadata.get("sessionTitle") or metadata.get("name")
            sessions.append(Session(
                id=session_id,
                provider="cursor",
                summary=title if isinstance(title, str) and title else "Untitled Session",
                message_count=blob_count,
                last_activity=created,
                created_at=created,
                cwd=project_path,
                model=metadata.get("model") if isinstance(metadata.get("model"), str) else None,
                file_path=str(db_path),
            ))

        sessions.sort(key=lambda s: sort_key(s.created_at), reverse=True)
        return paginate_sessions(sessions, limit, offset)

    async def find_store(self, session_id: str) -> Path:
        """Locate ``<hash>/<session_id>/store.db`` under the chats root."""
        if not _SESSION_ID.fullmatch(session_id) or session_id in (".", ".."):
            raise SessionNotFoundError(session_id, self.name)
        base = self.get_base_path()

        def _find() -> list[Path]:
            try:
                hashes = sorted(entry.path for entry in os.scandir(base) if entry.is_dir())
            except FileNotFoundError:
                return []
            return [db for db in (Path(h) / session_id / "store.db" for h in hashes) if db.is_file()]

        matches = await run_blocking(_find)
        if not matches:
            raise SessionNotFoundError(session_id, self.name)
        return matches[0]

    async def get_session_messages(
        self,
        session_id: str,
        project_name: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> MessagePage:
        db_path = await self.find_store(session_id)
        try:
            blobs = await read_store_blobs(db_path)
        except aiosqlite.Error as e:
            logger.warning("Could not read Cursor session %s: %s", session_id, e)
            blobs = []

        messages = []
        for blob in order_blobs(blobs):
            messages.extend(blob_to_messages(blob))
        return paginate_tail(link_tool_results(messages), limit, offset)

    async def delete_session(self, session_id: str, project_name: str | None = None) -> None:
        db_path = await self.find_store(session_id)
        await run_blocking(shutil.rmtree, db_path.parent)
        logger.info("Deleted Cursor session %s (%s)", session_id, db_path.parent)

    async def get_token_usage(self, session_id: str, project_name: str | None = None) -> TokenUsage:
        # Cursor stores do not record token counts
        return TokenUsage(unsupported=True)

"""Format-agnostic session grouping, pagination and message assembly."""

import re
from dataclasses import replace
from typing import TypeVar

from .core import Message, MessagePage, Session, SessionPage, sort_key

T = TypeVar("T")

# Summaries that are really a tool echoing JSON output
_JSON_SUMMARY = re.compile(r'^\{\s*"')


def looks_like_json(summary: str) -> bool:
    return bool(_JSON_SUMMARY.match(summary or ""))


def group_sessions(sessions: list[Session], roots: dict[str, str]) -> list[Session]:
    """Collapse sessions that start from the same first user message.

    ``roots`` maps a session ID to the UUID of its first user message (the
    entry with no parent). Sessions sharing a root are one conversation that
    was resumed or forked; only the most recently active one is returned,
    annotated with the group's size and member IDs. Sessions without a root
    are returned as they are.
    """
    groups: dict[str, list[Session]] = {}
    standalone = []
    for session in sessions:
        root = roots.get(session.id)
        if root is None:
            standalone.append(session)
        else:
            groups.setdefault(root, []).append(session)

    visible = []
    for members in groups.values():
        latest = members[0]
        for member in members[1:]:
            if sort_key(member.last_activity) > sort_key(latest.last_activity):
                latest = member
        if len(members) > 1:
            latest = replace(
                latest,
                is_grouped=True,
                group_size=len(members),
                group_sessions=[m.id for m in members],
            )
        visible.append(latest)

    return visible + standalone


def visible_sessions(sessions: list[Session], roots: dict[str, str]) -> list[Session]:
    """Group, drop JSON-echo sessions, and sort newest first."""
    grouped = group_sessions(sessions, roots)
    shown = [s for s in grouped if not looks_like_json(s.summary)]
    shown.sort(key=lambda s: sort_key(s.last_activity), reverse=True)
    return shown


def paginate_sessions(sessions: list[Session], limit: int | None, offset: int = 0) -> SessionPage:
    """Classic offset/limit page over an already sorted list."""
    total = len(sessions)
    offset = max(0, offset)
    if limit is None:
        return SessionPage(sessions=sessions[offset:], total=total, has_more=False, offset=offset)
    return SessionPage(
        sessions=sessions[offset:offset + limit],
        total=total,
        has_more=offset + limit < total,
        offset=offset,
        limit=limit,
    )


def paginate_tail(messages: list[Message], limit: int | None, offset: int = 0) -> MessagePage:
    """Page counted back from the newest message.

    Offset 0 returns the newest ``limit`` messages; a larger offset moves
    toward older ones. ``has_more`` is true while older messages remain.
    """
    total = len(messages)
    offset = max(0, offset)
    if limit is None:
        return MessagePage(messages=messages, total=total, has_more=False, offset=offset)

    start = max(0, total - offset - limit)
    end = max(0, total - offset)
    return MessagePage(
        messages=messages[start:end],
        total=total,
        has_more=start > 0,
        offset=offset,
        limit=limit,
    )


def sort_chronologically(items: list[T], key=lambda item: item.timestamp) -> list[T]:
    """Stable timestamp sort; ties keep file-scan order."""
    return sorted(items, key=lambda item: sort_key(key(item)))


def link_tool_results(messages: list[Message]) -> list[Message]:
    """Attach each tool result to the tool call with the same call ID.

    Linked results are folded into the call message; results whose call was
    never seen stay in the list as standalone ``tool_result`` messages.
    """
    calls: dict[str, Message] = {}
    linked = []
    for msg in messages:
        if msg.message_type == "tool_call" and msg.tool_call_id:
            calls[msg.tool_call_id] = msg
        elif msg.message_type == "tool_result" and msg.tool_call_id in calls:
            call = calls[msg.tool_call_id]
            if call.tool_result is None and msg.tool_result is not None:
                call.tool_result = msg.tool_result
                continue
        linked.append(msg)
    return linked

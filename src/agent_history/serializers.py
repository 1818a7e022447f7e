"""JSON-ready dicts for the core dataclasses, shared by the HTTP API and CLI."""


def _ts(value) -> str | None:
    return value.isoformat() if value else None


def session_to_dict(session) -> dict:
    """Convert a Session dataclass to a JSON-serializable dict."""
    return {
        "id": session.id,
        "provider": session.provider,
        "summary": session.summary,
        "message_count": session.message_count,
        "last_activity": _ts(session.last_activity),
        "created_at": _ts(session.created_at),
        "cwd": session.cwd,
        "model": session.model,
        "is_grouped": session.is_grouped,
        "group_size": session.group_size,
        "group_sessions": session.group_sessions,
    }


def message_to_dict(msg) -> dict:
    """Convert a Message dataclass to a JSON-serializable dict."""
    result = None
    if msg.tool_result is not None:
        result = {
            "content": msg.tool_result.content,
            "is_error": msg.tool_result.is_error,
            "timestamp": _ts(msg.tool_result.timestamp),
        }
    return {
        "role": msg.role,
        "content": msg.content,
        "timestamp": _ts(msg.timestamp),
        "message_type": msg.message_type,
        "tool_call_id": msg.tool_call_id,
        "tool_result": result,
        "metadata": msg.metadata,
    }


def project_to_dict(project) -> dict:
    return {
        "name": project.name,
        "path": project.path,
        "display_name": project.display_name,
        "is_custom_name": project.is_custom_name,
        "is_manually_added": project.is_manually_added,
        "sessions": [session_to_dict(s) for s in project.sessions],
        "session_meta": project.session_meta,
        "cursor_sessions": [session_to_dict(s) for s in project.cursor_sessions],
        "codex_sessions": [session_to_dict(s) for s in project.codex_sessions],
    }

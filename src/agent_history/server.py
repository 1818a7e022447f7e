"""FastAPI web server for agent-history."""

import logging

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import ProjectConflictError, ProjectNotFoundError, SessionNotFoundError
from .serializers import message_to_dict, project_to_dict, session_to_dict
from .store import HistoryStore

logger = logging.getLogger(__name__)

app = FastAPI(title="agent-history", version="0.1.0")

# Store (created on first request)
_store: HistoryStore | None = None


def _get_store() -> HistoryStore:
    """Lazily create and cache the history store."""
    global _store
    if _store is None:
        _store = HistoryStore()
        logger.info("Detected providers: %s", _store.available_providers())
    return _store


class RenameRequest(BaseModel):
    displayName: str = ""


class CreateProjectRequest(BaseModel):
    path: str = Field(..., min_length=1)
    displayName: str | None = None


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


@app.exception_handler(SessionNotFoundError)
@app.exception_handler(ProjectNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return _error(404, exc)


@app.exception_handler(ProjectConflictError)
async def conflict_handler(request: Request, exc: ProjectConflictError):
    return _error(409, exc)


@app.exception_handler(PermissionError)
async def permission_handler(request: Request, exc: PermissionError):
    logger.warning("Permission denied on %s: %s", request.url.path, exc)
    return _error(403, exc)


@app.exception_handler(ValueError)
async def invalid_input_handler(request: Request, exc: ValueError):
    return _error(400, exc)


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/sources")
async def get_sources():
    """Return the providers whose data exists on this machine."""
    return _get_store().available_providers()


@app.get("/api/projects")
async def get_projects():
    projects = await _get_store().list_projects()
    return [project_to_dict(p) for p in projects]


@app.post("/api/projects/create")
async def create_project(body: CreateProjectRequest):
    """Track a directory as a project before it has any sessions."""
    project = await _get_store().add_project_manually(body.path, body.displayName)
    return {"success": True, "project": project_to_dict(project)}


@app.put("/api/projects/{project_name}/rename")
async def rename_project(project_name: str, body: RenameRequest):
    await _get_store().rename_project(project_name, body.displayName)
    return {"success": True}


@app.delete("/api/projects/{project_name}")
async def delete_project(project_name: str):
    await _get_store().delete_project(project_name)
    return {"success": True}


@app.get("/api/projects/{project_name}/sessions")
async def get_sessions(
    project_name: str,
    limit: int = Query(5, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    provider: str = Query("claude", description="claude, codex or cursor"),
):
    """Return one page of a project's sessions, newest first."""
    page = await _get_store().list_sessions(project_name, limit, offset, provider)
    return {
        "sessions": [session_to_dict(s) for s in page.sessions],
        "total": page.total,
        "has_more": page.has_more,
        "offset": page.offset,
        "limit": page.limit,
    }


@app.get("/api/projects/{project_name}/sessions/{session_id}/messages")
async def get_session_messages(
    project_name: str,
    session_id: str,
    provider: str = Query("claude"),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
):
    """Return messages counted back from the newest (offset 0 = latest page)."""
    page = await _get_store().get_session_messages(session_id, provider, project_name, limit, offset)
    return {
        "session_id": session_id,
        "messages": [message_to_dict(m) for m in page.messages],
        "total": page.total,
        "has_more": page.has_more,
        "offset": page.offset,
        "limit": page.limit,
    }


@app.get("/api/projects/{project_name}/sessions/{session_id}/token-usage")
async def get_token_usage(project_name: str, session_id: str, provider: str = Query("claude")):
    usage = await _get_store().get_token_usage(session_id, provider, project_name)
    if usage.unsupported:
        return {"unsupported": True, "message": f"Token usage is not recorded by {provider}"}
    return {"used": usage.used, "total": usage.total, "breakdown": usage.breakdown}


@app.delete("/api/projects/{project_name}/sessions/{session_id}")
async def delete_session(project_name: str, session_id: str, provider: str = Query("claude")):
    await _get_store().delete_session(session_id, provider, project_name)
    logger.info("Deleted %s session %s from %s", provider, session_id, project_name)
    return {"success": True}


@app.post("/api/cache/invalidate")
async def invalidate_cache():
    """Forget resolved project paths, e.g. after logs were edited externally."""
    _get_store().invalidate_project_path_cache()
    return {"success": True}

"""CLI entry point for agent-history."""

import asyncio
import json
import logging

import click
import uvicorn

from .serializers import message_to_dict, project_to_dict, session_to_dict
from .store import HistoryStore


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@click.group()
@click.option("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...).")
def main(log_level: str):
    """Browse Claude Code, Codex and Cursor conversation history."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the HTTP API."""
    click.echo(f"Starting agent-history on http://{host}:{port}")
    uvicorn.run("agent_history.server:app", host=host, port=port, reload=False)


@main.command()
def projects():
    """List projects with their newest sessions."""
    result = asyncio.run(HistoryStore().list_projects())
    _echo_json([project_to_dict(p) for p in result])


@main.command()
@click.argument("project_name")
@click.option("--provider", type=click.Choice(["claude", "codex", "cursor"]), default="claude")
@click.option("--limit", default=20, show_default=True)
@click.option("--offset", default=0, show_default=True)
def sessions(project_name: str, provider: str, limit: int, offset: int):
    """List one page of a project's sessions."""
    page = asyncio.run(HistoryStore().list_sessions(project_name, limit, offset, provider))
    _echo_json({
        "sessions": [session_to_dict(s) for s in page.sessions],
        "total": page.total,
        "has_more": page.has_more,
    })


@main.command()
@click.argument("session_id")
@click.option("--project", "project_name", default=None, help="Project directory name.")
@click.option("--provider", type=click.Choice(["claude", "codex", "cursor"]), default="claude")
@click.option("--limit", default=None, type=int)
@click.option("--offset", default=0, show_default=True)
def messages(session_id: str, project_name: str | None, provider: str, limit: int | None, offset: int):
    """Print a session's messages, newest page first."""
    page = asyncio.run(HistoryStore().get_session_messages(session_id, provider, project_name, limit, offset))
    _echo_json({
        "messages": [message_to_dict(m) for m in page.messages],
        "total": page.total,
        "has_more": page.has_more,
    })

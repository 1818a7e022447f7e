"""Shared test fixtures for agent-history."""

import hashlib
import json
import sqlite3

import pytest

from agent_history.store import HistoryStore

PROJECT_PATH = "/home/dev/webapp"
PROJECT_NAME = "-home-dev-webapp"


def _write_jsonl(path, entries):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(json.dumps(e) for e in entries) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def write_jsonl():
    """Write a list of dicts as a JSONL file, creating parent directories."""
    return _write_jsonl


@pytest.fixture
def tmp_claude_projects(tmp_path):
    """Create a synthetic Claude Code projects directory.

    Includes:
    - sess-a: the original conversation (user, assistant text + tool_use, tool_result)
    - sess-b: the same conversation resumed in a later file (same root uuid)
    - sess-c: a session whose only prompt is JSON output (filtered from listings)
    - an agent sidechain file, which only contributes working directories
    """
    projects = tmp_path / "projects"
    project_dir = projects / PROJECT_NAME

    _write_jsonl(project_dir / "sess-a.jsonl", [
        {
            "type": "user", "sessionId": "sess-a", "uuid": "u-1", "parentUuid": None,
            "cwd": PROJECT_PATH, "timestamp": "2025-01-20T10:00:00Z",
            "message": {"role": "user", "content": "Fix the login bug"},
        },
        {
            "type": "assistant", "sessionId": "sess-a", "uuid": "u-2", "parentUuid": "u-1",
            "cwd": PROJECT_PATH, "timestamp": "2025-01-20T10:00:30Z",
            "message": {"role": "assistant", "content": [
                {"type": "text", "text": "Let me read the auth module."},
                {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "/src/auth.ts"}},
            ]},
        },
        {
            "type": "user", "sessionId": "sess-a", "uuid": "u-3", "parentUuid": "u-2",
            "cwd": PROJECT_PATH, "timestamp": "2025-01-20T10:00:31Z",
            "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "toolu_1", "content": "export function login() {}"},
            ]},
        },
        {
            "type": "assistant", "sessionId": "sess-a", "uuid": "u-4", "parentUuid": "u-3",
            "cwd": PROJECT_PATH, "timestamp": "2025-01-20T10:01:00Z",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "Fixed the token check."}],
                        "usage": {"input_tokens": 120, "cache_creation_input_tokens": 30,
                                  "cache_read_input_tokens": 850, "output_tokens": 40}},
        },
    ])

    _write_jsonl(project_dir / "sess-b.jsonl", [
        {
            "type": "user", "sessionId": "sess-b", "uuid": "u-1", "parentUuid": None,
            "cwd": PROJECT_PATH, "timestamp": "2025-01-21T09:00:00Z",
            "message": {"role": "user", "content": "Fix the login bug"},
        },
        {
            "type": "user", "sessionId": "sess-b", "uuid": "u-10", "parentUuid": "u-1",
            "cwd": PROJECT_PATH, "timestamp": "2025-01-21T09:05:00Z",
            "message": {"role": "user", "content": "Now add tests for it"},
        },
        {
            "type": "assistant", "sessionId": "sess-b", "uuid": "u-11", "parentUuid": "u-10",
            "cwd": PROJECT_PATH, "timestamp": "2025-01-21T09:06:00Z",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "Added three tests."}]},
        },
    ])

    _write_jsonl(project_dir / "sess-c.jsonl", [
        {
            "type": "user", "sessionId": "sess-c", "uuid": "c-1", "parentUuid": None,
            "cwd": PROJECT_PATH, "timestamp": "2025-01-19T08:00:00Z",
            "message": {"role": "user", "content": '{"subtask": "lint", "status": "ok"}'},
        },
    ])

    _write_jsonl(project_dir / "agent-1234.jsonl", [
        {
            "type": "user", "sessionId": "sess-a", "uuid": "g-1", "parentUuid": None, "isSidechain": True,
            "cwd": PROJECT_PATH + "/packages/api", "timestamp": "2025-01-18T08:00:00Z",
            "message": {"role": "user", "content": "Search the API package"},
        },
    ])

    return projects


@pytest.fixture
def tmp_codex_sessions(tmp_path):
    """Create a nested Codex sessions tree (YYYY/MM/DD/rollout-*.jsonl)."""
    root = tmp_path / "codex" / "sessions"
    day = root / "2025" / "01" / "22"

    _write_jsonl(day / "rollout-2025-01-22T08-00-00-codex-001.jsonl", [
        {"timestamp": "2025-01-22T08:00:00Z", "type": "session_meta",
         "payload": {"id": "codex-001", "cwd": PROJECT_PATH + "/server", "model": "gpt-5-codex",
                     "timestamp": "2025-01-22T08:00:00Z"}},
        {"timestamp": "2025-01-22T08:00:01Z", "type": "response_item",
         "payload": {"type": "message", "role": "user",
                     "content": [{"type": "input_text", "text": "<environment_context>cwd</environment_context>"}]}},
        {"timestamp": "2025-01-22T08:00:02Z", "type": "response_item",
         "payload": {"type": "message", "role": "developer",
                     "content": [{"type": "input_text", "text": "sandbox rules"}]}},
        {"timestamp": "2025-01-22T08:00:05Z", "type": "event_msg",
         "payload": {"type": "user_message", "message": "Why does the server crash on start?"}},
        {"timestamp": "2025-01-22T08:00:05Z", "type": "response_item",
         "payload": {"type": "message", "role": "user",
                     "content": [{"type": "input_text", "text": "Why does the server crash on start?"}]}},
        {"timestamp": "2025-01-22T08:00:10Z", "type": "response_item",
         "payload": {"type": "reasoning", "summary": [{"type": "summary_text", "text": "Check the logs first"}]}},
        {"timestamp": "2025-01-22T08:00:12Z", "type": "response_item",
         "payload": {"type": "function_call", "name": "shell_command", "call_id": "call_1",
                     "arguments": json.dumps({"command": "cat server.log", "workdir": "/home/dev/webapp"})}},
        {"timestamp": "2025-01-22T08:00:13Z", "type": "response_item",
         "payload": {"type": "function_call_output", "call_id": "call_1",
                     "output": json.dumps({"output": "Error: port in use", "metadata": {"exit_code": 0}})}},
        {"timestamp": "2025-01-22T08:00:20Z", "type": "response_item",
         "payload": {"type": "custom_tool_call", "name": "apply_patch", "call_id": "call_2",
                     "input": "*** Begin Patch\n*** Update File: server.py\n-PORT = 80\n+PORT = 8080\n*** End Patch"}},
        {"timestamp": "2025-01-22T08:00:21Z", "type": "response_item",
         "payload": {"type": "custom_tool_call_output", "call_id": "call_2", "output": "Done!"}},
        {"timestamp": "2025-01-22T08:00:30Z", "type": "response_item",
         "payload": {"type": "message", "role": "assistant",
                     "content": [{"type": "output_text", "text": "The port was taken; moved it to 8080."}]}},
        {"timestamp": "2025-01-22T08:00:31Z", "type": "event_msg",
         "payload": {"type": "token_count", "info": {"total_token_usage": {"total_tokens": 5400},
                                                     "model_context_window": 272000}}},
    ])

    _write_jsonl(day / "rollout-2025-01-22T09-00-00-codex-002.jsonl", [
        {"timestamp": "2025-01-22T09:00:00Z", "type": "session_meta",
         "payload": {"id": "codex-002", "cwd": "/home/dev/other-project"}},
        {"timestamp": "2025-01-22T09:00:05Z", "type": "event_msg",
         "payload": {"type": "user_message", "message": "Unrelated project"}},
    ])

    return root


def _hex_json(value) -> str:
    return json.dumps(value).encode("utf-8").hex()


@pytest.fixture
def tmp_cursor_chats(tmp_path):
    """Create a Cursor chats root with one store.db for PROJECT_PATH."""
    chats = tmp_path / "cursor" / "chats"
    session_dir = chats / hashlib.md5(PROJECT_PATH.encode("utf-8")).hexdigest() / "cursor-001"
    session_dir.mkdir(parents=True)

    conn = sqlite3.connect(str(session_dir / "store.db"))
    conn.execute("CREATE TABLE meta (key TEXT PRIMARY KEY, value TEXT)")
    conn.execute("CREATE TABLE blobs (id TEXT PRIMARY KEY, data BLOB)")
    conn.execute("INSERT INTO meta VALUES (?, ?)", ("0", _hex_json({
        "name": "Refactor auth flow",
        "createdAt": 1737540000000,
        "mode": "agent",
    })))

    records = [
        {"role": "system", "content": "You are a coding agent."},
        {"role": "user", "content": [{"type": "text", "text": "<user_query>\nRefactor the auth flow\n</user_query>"}]},
        {"role": "assistant", "content": [
            {"type": "reasoning", "text": "Start with the session store."},
            {"type": "text", "text": "Reading the session store."},
            {"type": "tool-call", "toolCallId": "tc-1", "toolName": "read_file", "args": {"path": "src/session.ts"}},
        ]},
        {"message": {"role": "tool", "content": [
            {"type": "tool-result", "toolCallId": "tc-1", "toolName": "read_file", "result": "export const store = {}"},
        ]}},
        {"role": "assistant", "content": "The store is a plain object; I'll wrap it."},
    ]
    for index, record in enumerate(records):
        conn.execute("INSERT INTO blobs VALUES (?, ?)", (f"blob-{index}", json.dumps(record).encode("utf-8")))
    conn.commit()
    conn.close()

    return chats


@pytest.fixture
def store(tmp_path, tmp_claude_projects, tmp_codex_sessions, tmp_cursor_chats):
    """A HistoryStore over all three synthetic providers."""
    return HistoryStore(
        claude_path=tmp_claude_projects,
        codex_path=tmp_codex_sessions,
        cursor_path=tmp_cursor_chats,
        config_path=tmp_path / "project-config.json",
    )

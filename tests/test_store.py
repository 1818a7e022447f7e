"""Tests for the HistoryStore facade."""

import asyncio
import json
import os

import pytest

from agent_history.backends import claude_code
from agent_history.errors import ProjectConflictError, ProjectNotFoundError, SessionNotFoundError
from agent_history.store import HistoryStore

from conftest import PROJECT_NAME, PROJECT_PATH


def _user(session_id, uuid, minute, text, parent=None):
    return {
        "type": "user", "sessionId": session_id, "uuid": uuid, "parentUuid": parent,
        "cwd": "/work/big", "timestamp": f"2025-03-01T10:{minute:02d}:00Z",
        "message": {"role": "user", "content": text},
    }


class TestProjects:

    @pytest.mark.asyncio
    async def test_list_projects(self, store):
        projects = await store.list_projects()
        assert len(projects) == 1

        project = projects[0]
        assert project.name == PROJECT_NAME
        assert project.path == PROJECT_PATH
        assert project.display_name == "webapp"
        assert not project.is_custom_name
        assert [s.id for s in project.sessions] == ["sess-b"]
        assert project.session_meta == {"has_more": False, "total": 1}
        assert [s.id for s in project.codex_sessions] == ["codex-001"]
        assert [s.id for s in project.cursor_sessions] == ["cursor-001"]

    @pytest.mark.asyncio
    async def test_display_name_from_package_json(self, tmp_path, write_jsonl):
        checkout = tmp_path / "checkout"
        checkout.mkdir()
        (checkout / "package.json").write_text(json.dumps({"name": "shop-frontend"}), encoding="utf-8")
        projects_root = tmp_path / "projects"
        write_jsonl(projects_root / "-checkout" / "s.jsonl", [
            {"type": "user", "sessionId": "s", "cwd": str(checkout), "timestamp": "2025-01-01T00:00:00Z",
             "message": {"role": "user", "content": "hi"}},
        ])
        store = HistoryStore(
            claude_path=projects_root,
            codex_path=tmp_path / "codex",
            cursor_path=tmp_path / "cursor",
            config_path=tmp_path / "config.json",
        )
        projects = await store.list_projects()
        assert projects[0].display_name == "shop-frontend"

    @pytest.mark.asyncio
    async def test_rename_and_reset(self, store, tmp_path):
        await store.rename_project(PROJECT_NAME, "Web App")
        projects = await store.list_projects()
        assert projects[0].display_name == "Web App"
        assert projects[0].is_custom_name

        await store.rename_project(PROJECT_NAME, "")
        projects = await store.list_projects()
        assert projects[0].display_name == "webapp"
        assert json.loads((tmp_path / "project-config.json").read_text(encoding="utf-8")) == {}

    @pytest.mark.asyncio
    async def test_rename_preserves_other_keys(self, store, tmp_path):
        config_path = tmp_path / "project-config.json"
        config_path.write_text(json.dumps({PROJECT_NAME: {"originalPath": "/srv/webapp"}}), encoding="utf-8")
        await store.rename_project(PROJECT_NAME, "Web")
        await store.rename_project(PROJECT_NAME, "")
        assert json.loads(config_path.read_text(encoding="utf-8")) == {PROJECT_NAME: {"originalPath": "/srv/webapp"}}

    @pytest.mark.asyncio
    async def test_add_project_manually(self, store, tmp_path):
        new_dir = tmp_path / "new_service"
        new_dir.mkdir()

        project = await store.add_project_manually(str(new_dir))
        assert project.path == str(new_dir)
        assert project.is_manually_added
        assert project.display_name == "new_service"

        listed = {p.name: p for p in await store.list_projects()}
        assert project.name in listed
        assert listed[project.name].path == str(new_dir)
        assert listed[project.name].sessions == []

        with pytest.raises(ProjectConflictError):
            await store.add_project_manually(str(new_dir))

    @pytest.mark.asyncio
    async def test_add_missing_path(self, store, tmp_path):
        with pytest.raises(ProjectNotFoundError):
            await store.add_project_manually(str(tmp_path / "does-not-exist"))

    @pytest.mark.asyncio
    async def test_delete_project_with_sessions_is_refused(self, store):
        with pytest.raises(ProjectConflictError):
            await store.delete_project(PROJECT_NAME)

    @pytest.mark.asyncio
    async def test_delete_empty_project(self, store, tmp_path, tmp_claude_projects):
        empty = tmp_claude_projects / "-home-dev-empty"
        empty.mkdir()
        await store.delete_project("-home-dev-empty")
        assert not empty.exists()

        with pytest.raises(ProjectNotFoundError):
            await store.delete_project("-home-dev-empty")

    @pytest.mark.asyncio
    async def test_delete_manual_project(self, store, tmp_path):
        new_dir = tmp_path / "manual"
        new_dir.mkdir()
        project = await store.add_project_manually(str(new_dir), "Manual")
        await store.delete_project(project.name)
        assert project.name not in {p.name for p in await store.list_projects()}
        assert new_dir.exists()


class TestSessions:

    @pytest.mark.asyncio
    async def test_list_sessions_per_provider(self, store):
        claude = await store.list_sessions(PROJECT_NAME)
        codex = await store.list_sessions(PROJECT_NAME, provider="codex")
        cursor = await store.list_sessions(PROJECT_NAME, provider="cursor")
        assert [s.id for s in claude.sessions] == ["sess-b"]
        assert [s.id for s in codex.sessions] == ["codex-001"]
        assert [s.id for s in cursor.sessions] == ["cursor-001"]

    @pytest.mark.asyncio
    async def test_unknown_provider(self, store):
        with pytest.raises(ValueError):
            await store.list_sessions(PROJECT_NAME, provider="copilot")

    @pytest.mark.asyncio
    async def test_pagination_across_files(self, tmp_path, write_jsonl):
        projects_root = tmp_path / "projects"
        for i in range(12):
            path = write_jsonl(projects_root / "-work-big" / f"s{i:02d}.jsonl", [
                _user(f"s{i:02d}", f"root-{i}", i, f"Task number {i}"),
            ])
            os.utime(path, (1700000000 + i, 1700000000 + i))
        store = HistoryStore(
            claude_path=projects_root,
            codex_path=tmp_path / "codex",
            cursor_path=tmp_path / "cursor",
            config_path=tmp_path / "config.json",
        )

        first = await store.list_sessions("-work-big", limit=5, offset=0)
        assert [s.id for s in first.sessions] == ["s11", "s10", "s09", "s08", "s07"]
        assert first.has_more

        last = await store.list_sessions("-work-big", limit=5, offset=10)
        assert [s.id for s in last.sessions] == ["s01", "s00"]
        assert not last.has_more

    @pytest.mark.asyncio
    async def test_concurrent_listing_resolves_project_once(self, store, monkeypatch):
        calls = []
        original = claude_code.tally_working_directories

        def counting(project_dir):
            calls.append(project_dir)
            return original(project_dir)

        monkeypatch.setattr(claude_code, "tally_working_directories", counting)
        first, second = await asyncio.gather(
            store.list_sessions(PROJECT_NAME),
            store.list_sessions(PROJECT_NAME, provider="codex"),
        )
        assert len(calls) == 1
        assert first.total == 1
        assert second.total == 1

    @pytest.mark.asyncio
    async def test_messages_tail_pagination(self, store):
        newest = await store.get_session_messages("sess-a", "claude", PROJECT_NAME, limit=2, offset=0)
        assert [m.content for m in newest.messages][-1] == "Fixed the token check."
        assert newest.total == 4
        assert newest.has_more

        older = await store.get_session_messages("sess-a", "claude", PROJECT_NAME, limit=2, offset=2)
        assert older.messages[0].content == "Fix the login bug"
        assert not older.has_more

    @pytest.mark.asyncio
    async def test_delete_shared_file_session(self, store, tmp_claude_projects, write_jsonl):
        path = write_jsonl(tmp_claude_projects / PROJECT_NAME / "shared.jsonl", [
            _user("keep", "k-1", 1, "keep me"),
            _user("drop", "d-1", 2, "drop me"),
            _user("keep", "k-2", 3, "still here", parent="k-1"),
        ])
        await store.delete_session("drop", "claude", PROJECT_NAME)

        lines = path.read_text(encoding="utf-8").split("\n")
        assert lines[-1] == ""
        assert [json.loads(line)["sessionId"] for line in lines[:-1]] == ["keep", "keep"]

        with pytest.raises(SessionNotFoundError):
            await store.get_session_messages("drop", "claude", PROJECT_NAME)

    @pytest.mark.asyncio
    async def test_token_usage(self, store):
        claude = await store.get_token_usage("sess-a", "claude", PROJECT_NAME)
        codex = await store.get_token_usage("codex-001", "codex")
        cursor = await store.get_token_usage("cursor-001", "cursor")
        assert claude.used == 1000
        assert codex.used == 5400
        assert cursor.unsupported

    @pytest.mark.asyncio
    async def test_invalidate_project_path_cache(self, store, tmp_path):
        assert await store.resolver.resolve(PROJECT_NAME) == PROJECT_PATH
        (tmp_path / "project-config.json").write_text(
            json.dumps({PROJECT_NAME: {"originalPath": "/moved/webapp"}}), encoding="utf-8",
        )
        assert await store.resolver.resolve(PROJECT_NAME) == PROJECT_PATH

        store.invalidate_project_path_cache()
        assert await store.resolver.resolve(PROJECT_NAME) == "/moved/webapp"

    def test_available_providers(self, store):
        assert store.available_providers() == ["claude", "codex", "cursor"]

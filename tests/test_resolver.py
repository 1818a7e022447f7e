"""Tests for project working-directory resolution."""

import asyncio
import json
from collections import Counter

import pytest

from agent_history.backends import claude_code
from agent_history.backends.claude_code import CwdTally
from agent_history.project_config import ProjectConfigStore
from agent_history.resolver import ProjectDirectoryResolver, choose_working_directory

from conftest import PROJECT_NAME, PROJECT_PATH


def _tally(counts, latest):
    return CwdTally(counts=Counter(counts), latest_cwd=latest, latest_timestamp=1.0)


class TestChooseWorkingDirectory:

    def test_rare_recent_directory_loses_to_majority(self):
        resolved = choose_working_directory(_tally({"/a": 10, "/b": 1}, "/b"), "-a")
        assert resolved.path == "/a"
        assert resolved.source == "majority"

    def test_recent_directory_with_enough_share_wins(self):
        resolved = choose_working_directory(_tally({"/a": 10, "/b": 4}, "/b"), "-a")
        assert resolved.path == "/b"
        assert resolved.source == "recent"

    def test_single_directory(self):
        resolved = choose_working_directory(_tally({"/a": 3}, "/a"), "-a")
        assert resolved.path == "/a"

    def test_empty_tally_decodes_name(self):
        resolved = choose_working_directory(CwdTally(), "-home-dev-app")
        assert resolved.path == "/home/dev/app"
        assert resolved.source == "decoded"

    def test_share_is_configurable(self):
        tally = _tally({"/a": 10, "/b": 4}, "/b")
        assert choose_working_directory(tally, "-a", recent_min_share=0.5).path == "/a"


def _resolver(projects_root, config_path):
    return ProjectDirectoryResolver(lambda: projects_root, ProjectConfigStore(config_path))


class TestProjectDirectoryResolver:

    @pytest.mark.asyncio
    async def test_resolves_from_logs(self, tmp_path, tmp_claude_projects):
        resolver = _resolver(tmp_claude_projects, tmp_path / "config.json")
        resolved = await resolver.resolve_with_source(PROJECT_NAME)
        assert resolved.path == PROJECT_PATH
        assert resolved.source in ("majority", "recent")

    @pytest.mark.asyncio
    async def test_config_original_path_wins(self, tmp_path, tmp_claude_projects):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({PROJECT_NAME: {"originalPath": "/srv/checkout"}}), encoding="utf-8")
        resolved = await _resolver(tmp_claude_projects, config_path).resolve_with_source(PROJECT_NAME)
        assert resolved.path == "/srv/checkout"
        assert resolved.source == "config"

    @pytest.mark.asyncio
    async def test_missing_directory_decodes_name(self, tmp_path):
        resolver = _resolver(tmp_path / "projects", tmp_path / "config.json")
        resolved = await resolver.resolve_with_source("-opt-tools-cli")
        assert resolved.path == "/opt/tools/cli"
        assert resolved.source == "decoded"

    @pytest.mark.asyncio
    async def test_result_is_cached_until_invalidated(self, tmp_path, tmp_claude_projects, monkeypatch):
        calls = []
        original = claude_code.tally_working_directories

        def counting(project_dir):
            calls.append(project_dir)
            return original(project_dir)

        monkeypatch.setattr(claude_code, "tally_working_directories", counting)
        resolver = _resolver(tmp_claude_projects, tmp_path / "config.json")

        first = await resolver.resolve(PROJECT_NAME)
        second = await resolver.resolve(PROJECT_NAME)
        assert first == second == PROJECT_PATH
        assert len(calls) == 1

        resolver.invalidate()
        assert await resolver.resolve(PROJECT_NAME) == PROJECT_PATH
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_resolves_scan_once(self, tmp_path, tmp_claude_projects, monkeypatch):
        calls = []
        original = claude_code.tally_working_directories

        def counting(project_dir):
            calls.append(project_dir)
            return original(project_dir)

        monkeypatch.setattr(claude_code, "tally_working_directories", counting)
        resolver = _resolver(tmp_claude_projects, tmp_path / "config.json")

        results = await asyncio.gather(*(resolver.resolve(PROJECT_NAME) for _ in range(5)))
        assert set(results) == {PROJECT_PATH}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_recent_subdirectory_from_logs(self, tmp_path, write_jsonl):
        projects = tmp_path / "projects"
        entries = [
            {"sessionId": "s1", "cwd": "/work/repo", "timestamp": f"2025-01-01T10:{i:02d}:00Z"}
            for i in range(10)
        ]
        entries += [
            {"sessionId": "s2", "cwd": "/work/repo/frontend", "timestamp": f"2025-02-01T10:{i:02d}:00Z"}
            for i in range(4)
        ]
        write_jsonl(projects / "-work-repo" / "s.jsonl", entries)

        resolved = await _resolver(projects, tmp_path / "config.json").resolve_with_source("-work-repo")
        assert resolved.path == "/work/repo/frontend"
        assert resolved.source == "recent"

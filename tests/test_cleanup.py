"""Tests for workspace cleanup."""

import os
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from autopr.agent import cleanup as cleanup_mod
from autopr.agent.cleanup import WorkspaceCleaner
from autopr.agent.workspace import WorktreeManager
from autopr.integrations.git import worktree_list

REAL_RUN = subprocess.run

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com",
}


@pytest.fixture
def workspace():
    """A workspace with one checked out job worktree."""
    with tempfile.TemporaryDirectory() as tmp:
        origin = Path(tmp) / "origin"
        origin.mkdir()
        subprocess.run(["git", "init"], cwd=origin, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=origin, capture_output=True, check=True)
        (origin / "README.md").write_text("# Test")
        subprocess.run(["git", "add", "."], cwd=origin, capture_output=True, check=True)
        subprocess.run(["git", "commit", "-m", "init"], cwd=origin, capture_output=True, check=True, env=GIT_ENV)

        manager = WorktreeManager(Path(tmp) / "ws")
        bare = manager.ensure_bare_repo("acme/widgets", url=str(origin))
        manager.create_worktree(bare, manager.worktree_path("j1", "widgets"))
        yield manager, bare


class TestCleanup:
    def test_removes_job_workspace(self, workspace):
        manager, bare = workspace
        (manager.root / "tmp").mkdir()
        (manager.root / "tmp" / "scratch").write_text("x")

        result = WorkspaceCleaner(manager, kill_list=[]).cleanup("j1")

        assert result.status == "done"
        assert result.warnings == []
        assert not manager.job_dir("j1").exists()
        assert not (manager.root / "tmp").exists()
        assert bare.exists()
        assert [e for e in worktree_list(bare) if not e.is_bare] == []

    def test_resets_env_vars(self, workspace, monkeypatch):
        manager, _ = workspace
        monkeypatch.setenv("DATABASE_URL", "postgres://leftover")
        WorkspaceCleaner(manager, kill_list=[]).cleanup("j1")
        assert "DATABASE_URL" not in os.environ

    def test_kill_failures_become_warnings(self, workspace):
        manager, _ = workspace
        pkill_calls = []

        def fake_run(cmd, *args, **kwargs):
            if cmd[0] != "pkill":
                return REAL_RUN(cmd, *args, **kwargs)
            pkill_calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 2, stdout="", stderr="pkill: bad pattern")

        with patch.object(cleanup_mod.subprocess, "run", side_effect=fake_run):
            result = WorkspaceCleaner(manager, kill_list=["node"]).cleanup("j1")

        assert pkill_calls == [["pkill", "-9", "-x", "node"]]
        assert result.status == "done"
        assert result.warnings == ["Killing node failed: pkill: bad pattern"]
        assert not manager.job_dir("j1").exists()

    def test_nothing_matched_is_not_a_warning(self, workspace):
        manager, _ = workspace

        def fake_run(cmd, *args, **kwargs):
            if cmd[0] != "pkill":
                return REAL_RUN(cmd, *args, **kwargs)
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="")

        with patch.object(cleanup_mod.subprocess, "run", side_effect=fake_run):
            result = WorkspaceCleaner(manager, kill_list=["node", "npm"]).cleanup("j1")
        assert result.warnings == []

    def test_cleanup_twice(self, workspace):
        manager, _ = workspace
        cleaner = WorkspaceCleaner(manager, kill_list=[])
        cleaner.cleanup("j1")
        assert cleaner.cleanup("j1").to_dict() == {"job_id": "j1", "status": "done", "warnings": []}

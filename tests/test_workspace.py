from __future__ import annotations

import shutil
import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from code_crew.errors import ConflictError, WorkspaceError
from code_crew.workspace import DirectoryBackend, GitWorktreeBackend, WorkspaceManager, default_backend


def _project(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    (project / "src").mkdir(parents=True)
    (project / "src" / "app.py").write_text("VALUE = 1\n")
    (project / "README.md").write_text("# demo\n")
    (project / ".code_crew").mkdir()
    (project / ".code_crew" / "state.json").write_text("{}")
    return project


def _git(args: list[str], cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


def _git_project(tmp_path: Path) -> Path:
    project = _project(tmp_path)
    (project / ".gitignore").write_text(".code_crew/\n")
    _git(["init", "-q"], project)
    _git(["config", "user.email", "crew@example.com"], project)
    _git(["config", "user.name", "Crew"], project)
    _git(["add", "-A"], project)
    _git(["commit", "-q", "-m", "init"], project)
    return project


def test_directory_workspace_isolates_and_merges(tmp_path: Path):
    project = _project(tmp_path)
    manager = WorkspaceManager(DirectoryBackend(project, tmp_path / "workspaces"))

    handle = manager.create("T01")
    assert not (handle.path / ".code_crew").exists()
    (handle.path / "src" / "app.py").write_text("VALUE = 2\n")
    (handle.path / "src" / "new.py").write_text("NEW = True\n")
    (handle.path / "README.md").unlink()

    assert (project / "src" / "app.py").read_text() == "VALUE = 1\n"
    assert manager.changed_files(handle) == ["README.md", "src/app.py", "src/new.py"]

    merged = manager.merge(handle)

    assert merged == ["README.md", "src/app.py", "src/new.py"]
    assert (project / "src" / "app.py").read_text() == "VALUE = 2\n"
    assert (project / "src" / "new.py").exists()
    assert not (project / "README.md").exists()


def test_directory_merge_detects_concurrent_edit(tmp_path: Path):
    project = _project(tmp_path)
    manager = WorkspaceManager(DirectoryBackend(project, tmp_path / "workspaces"))
    first = manager.create("T01")
    second = manager.create("T02")
    (first.path / "src" / "app.py").write_text("VALUE = 'first'\n")
    (second.path / "src" / "app.py").write_text("VALUE = 'second'\n")

    manager.merge(first)
    with pytest.raises(ConflictError) as excinfo:
        manager.merge(second)

    assert excinfo.value.files == ["src/app.py"]
    assert (project / "src" / "app.py").read_text() == "VALUE = 'first'\n"


def test_workspaces_are_recreated_per_attempt(tmp_path: Path):
    project = _project(tmp_path)
    manager = WorkspaceManager(DirectoryBackend(project, tmp_path / "workspaces"))
    first = manager.create("T01")
    (first.path / "scratch.txt").write_text("leftover")

    second = manager.create("T01")

    assert not (second.path / "scratch.txt").exists()
    assert manager.get("T01") is second
    assert len(manager.active()) == 1


def test_discard_and_destroy_all(tmp_path: Path):
    project = _project(tmp_path)
    manager = WorkspaceManager(DirectoryBackend(project, tmp_path / "workspaces"))
    one = manager.create("T01")
    two = manager.create("T02")

    assert manager.discard("T01") is True
    assert manager.discard("T01") is False
    assert not one.path.exists()
    assert manager.destroy_all() == []
    assert not two.path.exists()
    assert manager.active() == []


def test_copy_failure_raises_workspace_error(tmp_path: Path):
    manager = WorkspaceManager(DirectoryBackend(tmp_path / "missing", tmp_path / "workspaces"))

    with pytest.raises(WorkspaceError, match="T01"):
        manager.create("T01")
    assert manager.active() == []
    assert not (tmp_path / "workspaces" / "T01").exists()


def test_merge_write_failure_raises_workspace_error(tmp_path: Path):
    project = _project(tmp_path)
    manager = WorkspaceManager(DirectoryBackend(project, tmp_path / "workspaces"))
    handle = manager.create("T01")
    (handle.path / "pkg").mkdir()
    (handle.path / "pkg" / "mod.py").write_text("X = 1\n")
    (project / "pkg").write_text("not a directory\n")

    with pytest.raises(WorkspaceError, match="could not apply changes"):
        manager.merge(handle)


def test_default_backend_falls_back_without_git(tmp_path: Path):
    project = _project(tmp_path)
    assert isinstance(default_backend(project, tmp_path / "ws"), DirectoryBackend)
    assert isinstance(default_backend(project, tmp_path / "ws", use_worktrees=False), DirectoryBackend)


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_worktree_create_merge_destroy(tmp_path: Path):
    project = _git_project(tmp_path)
    backend = default_backend(project, tmp_path / "worktrees")
    assert isinstance(backend, GitWorktreeBackend)
    manager = WorkspaceManager(backend)

    handle = manager.create("T01")
    assert handle.branch == "crew/T01"
    (handle.path / "src" / "app.py").write_text("VALUE = 2\n")
    (handle.path / "src" / "extra.py").write_text("EXTRA = 1\n")
    assert manager.changed_files(handle) == ["src/app.py", "src/extra.py"]

    assert manager.merge(handle) == ["src/app.py", "src/extra.py"]
    assert (project / "src" / "app.py").read_text() == "VALUE = 2\n"

    manager.destroy(handle)
    assert not handle.path.exists()
    branches = subprocess.run(["git", "branch"], cwd=project, capture_output=True, text=True).stdout
    assert "crew/T01" not in branches


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_worktree_conflict_is_reported_and_aborted(tmp_path: Path):
    project = _git_project(tmp_path)
    manager = WorkspaceManager(GitWorktreeBackend(project, tmp_path / "worktrees"))
    first = manager.create("T01")
    second = manager.create("T02")
    (first.path / "src" / "app.py").write_text("VALUE = 'first'\n")
    (second.path / "src" / "app.py").write_text("VALUE = 'second'\n")

    manager.merge(first)
    with pytest.raises(ConflictError) as excinfo:
        manager.merge(second)

    assert excinfo.value.files == ["src/app.py"]
    assert (project / "src" / "app.py").read_text() == "VALUE = 'first'\n"
    status = subprocess.run(["git", "status", "--porcelain"], cwd=project, capture_output=True, text=True).stdout
    assert "UU" not in status
    manager.destroy_all()


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_worktree_without_commits_raises_workspace_error(tmp_path: Path):
    project = _project(tmp_path)
    _git(["init", "-q"], project)
    manager = WorkspaceManager(GitWorktreeBackend(project, tmp_path / "workspaces"))

    with pytest.raises(WorkspaceError, match="rev-parse HEAD"):
        manager.create("T01")
    assert manager.active() == []

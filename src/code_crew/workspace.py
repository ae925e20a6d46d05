"""Create, merge and destroy one private working copy per task.

`WorkspaceManager` owns the task -> workspace mapping and delegates the
mechanics to a `WorkspaceBackend`: `GitWorktreeBackend` for git projects,
`DirectoryBackend` (plain copy) for everything else.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol, TypeVar

from loguru import logger

from .constants import HEALTH_DIR_NAME, STATE_DIR_NAME
from .errors import ConflictError, WorkspaceError

T = TypeVar("T")

_IGNORED_NAMES = {".git", STATE_DIR_NAME, HEALTH_DIR_NAME, "__pycache__", ".pytest_cache", ".mypy_cache", ".ruff_cache"}


@dataclass
class WorkspaceHandle:
    task_id: str
    path: Path
    branch: Optional[str] = None
    base_ref: Optional[str] = None
    # relative path -> digest of the source tree when the copy was taken
    snapshot: dict[str, str] = field(default_factory=dict)


class WorkspaceBackend(Protocol):
    def create(self, task_id: str) -> WorkspaceHandle: ...

    def merge(self, handle: WorkspaceHandle) -> list[str]: ...

    def destroy(self, handle: WorkspaceHandle) -> None: ...

    def changed_files(self, handle: WorkspaceHandle) -> list[str]: ...


class GitLock:
    """Serialize git operations on one repository across threads."""

    _lock = threading.RLock()

    def run(self, operation: Callable[[], T], operation_name: str = "git operation") -> T:
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for git lock ({})", thread_id, operation_name)
        with self._lock:
            try:
                return operation()
            except Exception as exc:
                logger.error("Thread {} git operation failed ({}): {}", thread_id, operation_name, exc)
                raise


_git_lock = GitLock()


def _git(args: list[str], cwd: Path, *, check: bool = True, task_id: str = "") -> subprocess.CompletedProcess:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True)
    if check and result.returncode != 0:
        raise WorkspaceError(task_id, f"git {' '.join(args)} failed: {(result.stderr or result.stdout).strip()}")
    return result


def _file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _tree_digests(root: Path) -> dict[str, str]:
    digests: dict[str, str] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if name not in _IGNORED_NAMES]
        for filename in filenames:
            full = Path(dirpath) / filename
            if full.is_symlink() or not full.is_file():
                continue
            digests[full.relative_to(root).as_posix()] = _file_digest(full)
    return digests


def _is_ignored(rel_path: str) -> bool:
    return any(part in _IGNORED_NAMES for part in Path(rel_path).parts)


class GitWorktreeBackend:
    """One `git worktree` and branch `crew/<task_id>` per task."""

    def __init__(self, project_dir: Path, workspaces_dir: Path, *, branch_prefix: str = "crew/") -> None:
        self.project_dir = project_dir
        self.workspaces_dir = workspaces_dir
        self.branch_prefix = branch_prefix

    @staticmethod
    def is_available(project_dir: Path) -> bool:
        return (project_dir / ".git").exists() and shutil.which("git") is not None

    def create(self, task_id: str) -> WorkspaceHandle:
        path = self.workspaces_dir / task_id
        branch = f"{self.branch_prefix}{task_id}"

        def _create() -> WorkspaceHandle:
            if path.exists():
                _git(["worktree", "remove", "--force", str(path)], self.project_dir, check=False)
                shutil.rmtree(path, ignore_errors=True)
            _git(["worktree", "prune"], self.project_dir, check=False)
            _git(["branch", "-D", branch], self.project_dir, check=False)
            self.workspaces_dir.mkdir(parents=True, exist_ok=True)
            base_ref = _git(["rev-parse", "HEAD"], self.project_dir, task_id=task_id).stdout.strip()
            _git(["worktree", "add", "-b", branch, str(path), base_ref], self.project_dir, task_id=task_id)
            return WorkspaceHandle(task_id=task_id, path=path, branch=branch, base_ref=base_ref)

        return _git_lock.run(_create, f"worktree add {task_id}")

    def changed_files(self, handle: WorkspaceHandle) -> list[str]:
        changed: set[str] = set()
        diff = _git(["diff", "--name-only", handle.base_ref or "HEAD"], handle.path, check=False)
        changed.update(line.strip() for line in diff.stdout.splitlines() if line.strip())
        untracked = _git(["ls-files", "--others", "--exclude-standard"], handle.path, check=False)
        changed.update(line.strip() for line in untracked.stdout.splitlines() if line.strip())
        return sorted(path for path in changed if not _is_ignored(path))

    def merge(self, handle: WorkspaceHandle) -> list[str]:
        files = self.changed_files(handle)
        if not files:
            return []
        _git(["add", "-A", "--", *files], handle.path, task_id=handle.task_id)
        _git(["commit", "-m", f"crew: {handle.task_id}", "--no-verify"], handle.path, task_id=handle.task_id)

        def _merge() -> list[str]:
            result = _git(
                ["merge", "--no-ff", "--no-edit", "-m", f"Merge task {handle.task_id}", handle.branch or ""],
                self.project_dir,
                check=False,
            )
            if result.returncode != 0:
                conflicted = _git(["diff", "--name-only", "--diff-filter=U"], self.project_dir, check=False)
                conflict_files = [line for line in conflicted.stdout.splitlines() if line.strip()]
                _git(["merge", "--abort"], self.project_dir, check=False)
                raise ConflictError(
                    handle.task_id,
                    (result.stderr or result.stdout).strip() or "git merge failed",
                    files=conflict_files,
                )
            return files

        return _git_lock.run(_merge, f"merge {handle.task_id}")

    def destroy(self, handle: WorkspaceHandle) -> None:
        def _destroy() -> None:
            _git(["worktree", "remove", "--force", str(handle.path)], self.project_dir, check=False)
            if handle.path.exists():
                shutil.rmtree(handle.path, ignore_errors=True)
            _git(["worktree", "prune"], self.project_dir, check=False)
            if handle.branch:
                _git(["branch", "-D", handle.branch], self.project_dir, check=False)

        _git_lock.run(_destroy, f"worktree remove {handle.task_id}")


class DirectoryBackend:
    """Plain directory copies for projects without git."""

    def __init__(self, project_dir: Path, workspaces_dir: Path) -> None:
        self.project_dir = project_dir
        self.workspaces_dir = workspaces_dir
        self._merge_lock = threading.Lock()

    def create(self, task_id: str) -> WorkspaceHandle:
        path = self.workspaces_dir / task_id
        if path.exists():
            shutil.rmtree(path)
        self.workspaces_dir.mkdir(parents=True, exist_ok=True)
        with self._merge_lock:
            try:
                shutil.copytree(
                    self.project_dir,
                    path,
                    ignore=shutil.ignore_patterns(*_IGNORED_NAMES),
                    symlinks=True,
                )
            except OSError:
                shutil.rmtree(path, ignore_errors=True)
                raise
            snapshot = _tree_digests(path)
        return WorkspaceHandle(task_id=task_id, path=path, snapshot=snapshot)

    def changed_files(self, handle: WorkspaceHandle) -> list[str]:
        current = _tree_digests(handle.path)
        changed = {rel for rel, digest in current.items() if handle.snapshot.get(rel) != digest}
        changed.update(rel for rel in handle.snapshot if rel not in current)
        return sorted(changed)

    def merge(self, handle: WorkspaceHandle) -> list[str]:
        files = self.changed_files(handle)
        with self._merge_lock:
            # The source must still match the snapshot for every file we overwrite.
            conflicts: list[str] = []
            for rel in files:
                source = self.project_dir / rel
                original = handle.snapshot.get(rel)
                current = _file_digest(source) if source.is_file() else None
                if current != original:
                    conflicts.append(rel)
            if conflicts:
                raise ConflictError(handle.task_id, "files changed in the project since the copy was taken", files=conflicts)
            for rel in files:
                source = handle.path / rel
                target = self.project_dir / rel
                if source.is_file():
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, target)
                elif target.exists():
                    target.unlink()
        return files

    def destroy(self, handle: WorkspaceHandle) -> None:
        shutil.rmtree(handle.path, ignore_errors=True)


class WorkspaceManager:
    """Track the single workspace owned by each in-flight task."""

    def __init__(self, backend: WorkspaceBackend) -> None:
        self.backend = backend
        self._lock = threading.Lock()
        self._active: dict[str, WorkspaceHandle] = {}

    def create(self, task_id: str) -> WorkspaceHandle:
        with self._lock:
            existing = self._active.get(task_id)
        if existing is not None:
            # Workspaces are never reused across attempts.
            self.destroy(existing)
        try:
            handle = self.backend.create(task_id)
        except OSError as exc:
            raise WorkspaceError(task_id, f"could not copy the project: {exc}") from exc
        with self._lock:
            self._active[task_id] = handle
        logger.debug("Created workspace for {} at {}", task_id, handle.path)
        return handle

    def get(self, task_id: str) -> Optional[WorkspaceHandle]:
        with self._lock:
            return self._active.get(task_id)

    def changed_files(self, handle: WorkspaceHandle) -> list[str]:
        return self.backend.changed_files(handle)

    def merge(self, handle: WorkspaceHandle) -> list[str]:
        """Apply the workspace changes to the project.

        Raises:
            ConflictError: If the project moved under the workspace.
            WorkspaceError: If the changes cannot be committed or copied back.
        """
        try:
            files = self.backend.merge(handle)
        except OSError as exc:
            raise WorkspaceError(handle.task_id, f"could not apply changes: {exc}") from exc
        logger.info("Merged {} file(s) from task {}", len(files), handle.task_id)
        return files

    def destroy(self, handle: WorkspaceHandle) -> None:
        try:
            self.backend.destroy(handle)
        finally:
            with self._lock:
                if self._active.get(handle.task_id) is handle:
                    del self._active[handle.task_id]
        logger.debug("Destroyed workspace for {}", handle.task_id)

    def discard(self, task_id: str) -> bool:
        handle = self.get(task_id)
        if handle is None:
            return False
        self.destroy(handle)
        return True

    def active(self) -> list[WorkspaceHandle]:
        with self._lock:
            return list(self._active.values())

    def destroy_all(self) -> list[str]:
        """Destroy every tracked workspace; returns the task ids whose cleanup failed."""
        failed: list[str] = []
        for handle in self.active():
            try:
                self.destroy(handle)
            except Exception as exc:
                logger.error("Failed to destroy workspace for {}: {}", handle.task_id, exc)
                failed.append(handle.task_id)
        return failed


def default_backend(project_dir: Path, workspaces_dir: Path, *, use_worktrees: bool = True) -> WorkspaceBackend:
    if use_worktrees and GitWorktreeBackend.is_available(project_dir):
        return GitWorktreeBackend(project_dir, workspaces_dir)
    return DirectoryBackend(project_dir, workspaces_dir)

"""Own the task graph and its status state machine.

Every status change goes through `BacklogManager.transition`, a compare-and-set
under a re-entrant lock, so concurrent workers can never lose an update.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

from .constants import BACKLOG_SCHEMA_VERSION
from .errors import CycleError, InvalidTransition, ParseError
from .io_utils import FileLock, _atomic_write_yaml, _load_data_with_error
from .models import (
    ALLOWED_TRANSITIONS,
    SCHEDULABLE_STATUSES,
    TERMINAL_STATUSES,
    Backlog,
    Task,
    TaskContext,
    TaskStatus,
)
from .utils import _now_iso


def find_cycle(graph: dict[str, list[str]]) -> Optional[list[str]]:
    """Detect a dependency cycle.

    Args:
        graph: Mapping of task id to the ids it depends on.

    Returns:
        The cycle as a closed path (first id repeated at the end), or None.
    """
    # Track visit state: 0 = unvisited, 1 = visiting, 2 = visited
    state: dict[str, int] = {node: 0 for node in graph}

    for start in graph:
        if state[start] != 0:
            continue
        # Iterative DFS so long dependency chains cannot exhaust the stack.
        path: list[str] = [start]
        stack: list[Iterable[str]] = [iter(graph.get(start, []))]
        state[start] = 1
        while stack:
            advanced = False
            for neighbor in stack[-1]:
                if neighbor not in state:
                    continue
                if state[neighbor] == 1:
                    cycle_start = path.index(neighbor)
                    return path[cycle_start:] + [neighbor]
                if state[neighbor] == 0:
                    state[neighbor] = 1
                    path.append(neighbor)
                    stack.append(iter(graph.get(neighbor, [])))
                    advanced = True
                    break
            if not advanced:
                state[path.pop()] = 2
                stack.pop()
    return None


def execution_batches(tasks: list[Task]) -> list[list[str]]:
    """Layer tasks into batches that could run together (Kahn's algorithm).

    Raises:
        CycleError: If the graph cannot be fully layered.
    """
    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = defaultdict(list)
    for task in tasks:
        in_degree[task.id] = len(task.depends_on)
        for dep in task.depends_on:
            dependents[dep].append(task.id)

    batches: list[list[str]] = []
    queue = deque([task.id for task in tasks if in_degree[task.id] == 0])
    while queue:
        batch = list(queue)
        batches.append(batch)
        queue.clear()
        for task_id in batch:
            for dependent in dependents.get(task_id, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

    scheduled = sum(len(batch) for batch in batches)
    if scheduled != len(tasks):
        cycle = find_cycle({task.id: list(task.depends_on) for task in tasks})
        raise CycleError(cycle or [task.id for task in tasks if in_degree[task.id] > 0])
    return batches


def parse_backlog(data: Any, *, source: str = "<backlog>", require_acceptance: bool = False) -> Backlog:
    """Validate raw manifest data and build a `Backlog`.

    Args:
        data: Parsed YAML document.
        source: Label used in error messages.
        require_acceptance: Reject tasks without acceptance criteria.

    Raises:
        ParseError: On structural problems, unknown or self dependencies,
            duplicate ids or unknown statuses.
        CycleError: When the dependency relation is cyclic.
    """
    if not isinstance(data, dict):
        raise ParseError(f"{source}: expected a mapping at the top level")
    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise ParseError(f"{source}: 'tasks' must be a non-empty list")

    tasks: list[Task] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_tasks):
        if not isinstance(raw, dict):
            raise ParseError(f"{source}: task #{index + 1} is not a mapping")
        task_id = str(raw.get("id") or "").strip()
        if not task_id:
            raise ParseError(f"{source}: task #{index + 1} is missing 'id'")
        if not str(raw.get("title") or "").strip():
            raise ParseError(f"{source}: task {task_id} is missing 'title'")
        if task_id in seen:
            raise ParseError(f"{source}: duplicate task id {task_id}")
        for key in ("depends_on", "acceptance"):
            if raw.get(key) is not None and not isinstance(raw.get(key), list):
                raise ParseError(f"{source}: task {task_id} field '{key}' must be a list")
        for key in ("scope", "context"):
            if raw.get(key) is not None and not isinstance(raw.get(key), dict):
                raise ParseError(f"{source}: task {task_id} field '{key}' must be a mapping")
        try:
            task = Task.from_dict(raw)
        except (TypeError, ValueError) as exc:
            raise ParseError(f"{source}: task {task_id}: {exc}") from exc
        if require_acceptance and not task.acceptance:
            raise ParseError(f"{source}: task {task_id} has no acceptance criteria")
        seen.add(task_id)
        tasks.append(task)

    for task in tasks:
        for dep in task.depends_on:
            if dep == task.id:
                raise ParseError(f"{source}: task {task.id} depends on itself")
            if dep not in seen:
                raise ParseError(f"{source}: task {task.id} depends on unknown task {dep}")

    cycle = find_cycle({task.id: list(task.depends_on) for task in tasks})
    if cycle:
        raise CycleError(cycle)

    known = {"version", "track_id", "created_at", "updated_at", "tasks"}
    now = _now_iso()
    return Backlog(
        track_id=str(data.get("track_id") or "default"),
        tasks=tasks,
        version=str(data.get("version") or BACKLOG_SCHEMA_VERSION),
        created_at=str(data.get("created_at") or now),
        updated_at=str(data.get("updated_at") or now),
        extra={key: value for key, value in data.items() if key not in known},
    )


class BacklogManager:
    """Single owner of backlog state; all reads return copies."""

    def __init__(self, manifest_path: Optional[Path] = None) -> None:
        self.manifest_path = manifest_path
        self._backlog: Optional[Backlog] = None
        self._index: dict[str, Task] = {}
        self._lock = threading.RLock()
        # attempts value observed the last time each task entered `ready`
        self._attempts_at_ready: dict[str, int] = {}

    # -- loading ---------------------------------------------------------------

    def load(self, manifest_path: Optional[Path] = None) -> Backlog:
        """Load and validate a manifest.

        Raises:
            ParseError: If the file is missing, unreadable or invalid.
            CycleError: If the dependency graph has a cycle.
        """
        path = manifest_path or self.manifest_path
        if path is None:
            raise ParseError("No backlog manifest path given")
        if not path.exists():
            raise ParseError(f"Backlog manifest not found: {path}")
        data, err = _load_data_with_error(path, {})
        if err:
            raise ParseError(err)
        backlog = parse_backlog(data, source=path.name)
        self.manifest_path = path
        self.attach(backlog)
        logger.info("Loaded backlog {} with {} task(s) from {}", backlog.track_id, len(backlog.tasks), path)
        return self.snapshot()

    def attach(self, backlog: Backlog) -> None:
        """Adopt an already validated backlog as the managed state."""
        with self._lock:
            self._backlog = backlog
            self._index = {task.id: task for task in backlog.tasks}
            # Tasks already past `ready` counted the attempt that took them there.
            self._attempts_at_ready = {
                task.id: task.attempts if task.status in SCHEDULABLE_STATUSES else max(task.attempts - 1, 0)
                for task in backlog.tasks
            }

    @property
    def backlog(self) -> Backlog:
        if self._backlog is None:
            raise RuntimeError("No backlog loaded")
        return self._backlog

    def snapshot(self) -> Backlog:
        with self._lock:
            backlog = self.backlog
            return Backlog(
                track_id=backlog.track_id,
                tasks=[task.clone() for task in backlog.tasks],
                version=backlog.version,
                created_at=backlog.created_at,
                updated_at=backlog.updated_at,
                extra=dict(backlog.extra),
            )

    # -- queries ---------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            return self._require(task_id).clone()

    def all_tasks(self) -> list[Task]:
        with self._lock:
            return [task.clone() for task in self.backlog.tasks]

    def get_ready_tasks(self) -> list[Task]:
        """Return schedulable tasks whose dependencies are all completed.

        Ordered by fewer attempts first, then declaration order.
        """
        with self._lock:
            ready: list[tuple[int, int, Task]] = []
            for position, task in enumerate(self.backlog.tasks):
                if task.status not in SCHEDULABLE_STATUSES:
                    continue
                if all(self._index[dep].status == TaskStatus.COMPLETED for dep in task.depends_on):
                    ready.append((task.attempts, position, task))
            ready.sort(key=lambda item: (item[0], item[1]))
            return [task.clone() for _, _, task in ready]

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in TaskStatus}
            for task in self.backlog.tasks:
                counts[task.status.value] += 1
            return counts

    def is_drained(self) -> bool:
        """True when nothing is ready to start and nothing is in flight."""
        with self._lock:
            if any(task.status in {TaskStatus.IN_PROGRESS, TaskStatus.REVIEW} for task in self.backlog.tasks):
                return False
            return not self.get_ready_tasks()

    def execution_batches(self) -> list[list[str]]:
        with self._lock:
            return execution_batches(self.backlog.tasks)

    # -- mutations -------------------------------------------------------------

    def transition(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        *,
        error: Optional[str] = None,
    ) -> Task:
        """Move a task between statuses if it is still in `from_status`.

        Raises:
            InvalidTransition: If the current status differs or the edge is not allowed.
        """
        from_status = TaskStatus(from_status)
        to_status = TaskStatus(to_status)
        with self._lock:
            task = self._require(task_id)
            if task.status != from_status or to_status not in ALLOWED_TRANSITIONS[from_status]:
                raise InvalidTransition(task_id, from_status.value, task.status.value, to_status.value)
            if to_status == TaskStatus.READY and from_status == TaskStatus.FAILED:
                floor = self._attempts_at_ready.get(task_id, 0)
                if task.attempts <= floor:
                    task.attempts = floor + 1
            if to_status == TaskStatus.READY:
                self._attempts_at_ready[task_id] = task.attempts
            if error is not None:
                task.last_error = error
            elif to_status in {TaskStatus.COMPLETED, TaskStatus.READY} and from_status != TaskStatus.FAILED:
                task.last_error = None
            task.status = to_status
            logger.debug("Task {}: {} -> {}", task_id, from_status.value, to_status.value)
            return task.clone()

    def record_attempt(self, task_id: str) -> int:
        with self._lock:
            task = self._require(task_id)
            task.attempts += 1
            return task.attempts

    def revise(
        self,
        task_id: str,
        *,
        description: Optional[str] = None,
        context: Optional[TaskContext] = None,
        spec_version: Optional[int] = None,
    ) -> Task:
        """Replace a failed task's specification in place; id and acceptance are kept."""
        with self._lock:
            task = self._require(task_id)
            if task.status != TaskStatus.FAILED:
                raise InvalidTransition(task_id, TaskStatus.FAILED.value, task.status.value, "revised")
            if description is not None:
                task.description = description
            if context is not None:
                task.context = TaskContext(
                    constraints=list(context.constraints),
                    patterns=list(context.patterns),
                    gotchas=list(context.gotchas),
                    extra=dict(context.extra),
                )
                task.context_declared = True
            if spec_version is not None:
                if spec_version <= task.spec_version:
                    raise ValueError(f"spec_version must increase (current {task.spec_version})")
                task.spec_version = spec_version
            return task.clone()

    def block_unreachable(self) -> list[str]:
        """Block pending tasks whose dependencies can no longer complete."""
        blocked: list[str] = []
        with self._lock:
            changed = True
            while changed:
                changed = False
                for task in self.backlog.tasks:
                    if task.status not in SCHEDULABLE_STATUSES:
                        continue
                    dead = [
                        dep
                        for dep in task.depends_on
                        if self._index[dep].status in {TaskStatus.ABANDONED, TaskStatus.BLOCKED}
                    ]
                    if dead:
                        self.transition(
                            task.id,
                            task.status,
                            TaskStatus.BLOCKED,
                            error=f"Dependency {dead[0]} is {self._index[dead[0]].status.value}",
                        )
                        blocked.append(task.id)
                        changed = True
        return blocked

    def archive(self, task_id: str, archive_path: Optional[Path] = None) -> Task:
        """Remove a terminal task from the backlog, appending it to the archive file.

        Raises:
            ValueError: If the task is not terminal or another task still depends on it.
        """
        with self._lock:
            task = self._require(task_id)
            if task.status not in TERMINAL_STATUSES:
                raise ValueError(f"Task {task_id} is {task.status.value}; only terminal tasks can be archived")
            dependents = [other.id for other in self.backlog.tasks if task_id in other.depends_on]
            if dependents:
                raise ValueError(f"Task {task_id} is still required by {', '.join(dependents)}")
            self.backlog.tasks = [other for other in self.backlog.tasks if other.id != task_id]
            del self._index[task_id]
            self._attempts_at_ready.pop(task_id, None)

            target = archive_path or self._default_archive_path()
            if target is not None:
                with FileLock(target.with_suffix(target.suffix + ".lock")):
                    data, err = _load_data_with_error(target, {"tasks": []})
                    if err:
                        raise ParseError(err)
                    archived = list(data.get("tasks") or [])
                    entry = task.to_dict()
                    entry["archived_at"] = _now_iso()
                    archived.append(entry)
                    data["tasks"] = archived
                    _atomic_write_yaml(target, data)
            logger.info("Archived task {}", task_id)
            return task.clone()

    def save(self, path: Optional[Path] = None) -> Path:
        """Atomically persist the backlog, stamping `updated_at`."""
        target = path or self.manifest_path
        if target is None:
            raise ValueError("No path to save the backlog to")
        with self._lock:
            self.backlog.updated_at = _now_iso()
            data = self.backlog.to_dict()
            with FileLock(target.with_suffix(target.suffix + ".lock")):
                _atomic_write_yaml(target, data)
        if self.manifest_path is None:
            self.manifest_path = target
        return target

    # -- helpers ---------------------------------------------------------------

    def _require(self, task_id: str) -> Task:
        task = self._index.get(task_id)
        if task is None:
            raise KeyError(f"Unknown task: {task_id}")
        return task

    def _default_archive_path(self) -> Optional[Path]:
        if self.manifest_path is None:
            return None
        return self.manifest_path.with_name("ARCHIVE.yaml")

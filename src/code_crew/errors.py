"""Define the exception taxonomy shared by every coordination component."""

from __future__ import annotations

from typing import Optional, Sequence


class CrewError(Exception):
    """Base class for all errors raised by the coordination core."""


class ParseError(CrewError):
    """Raised when a backlog manifest cannot be read or fails validation."""


class CycleError(CrewError):
    """Raised when the task dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class InvalidTransition(CrewError):
    """Raised when a compare-and-set status transition does not apply."""

    def __init__(self, task_id: str, expected: str, actual: str, target: str) -> None:
        self.task_id = task_id
        self.expected = expected
        self.actual = actual
        self.target = target
        super().__init__(
            f"Task {task_id}: cannot transition {expected} -> {target} (current status: {actual})"
        )


class ContextError(CrewError):
    """Base class for context build failures."""

    def __init__(self, message: str, *, issues: Optional[Sequence[str]] = None) -> None:
        self.issues = list(issues or [])
        super().__init__(message)


class OverBudget(ContextError):
    """Raised when a payload exceeds a size or count limit."""


class ForbiddenContent(ContextError):
    """Raised when a payload carries content that must never reach a worker."""


class UnhealthyToolchain(CrewError):
    """Raised when a verification tool fails its known-outcome probe."""

    def __init__(self, workspace: str, issues: Sequence[str]) -> None:
        self.workspace = workspace
        self.issues = list(issues)
        joined = "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(f"Instrumentation health check failed for {workspace}:\n{joined}")


class ExecutionTimeout(CrewError):
    """Raised when the execution collaborator misses its deadline."""


class CollaboratorError(CrewError):
    """Raised when the execution collaborator reports an error.

    ``transient`` marks network-class failures that may be retried with backoff.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


class ConflictError(CrewError):
    """Raised when an isolated workspace cannot be merged back."""

    def __init__(self, task_id: str, detail: str, *, files: Optional[Sequence[str]] = None) -> None:
        self.task_id = task_id
        self.files = list(files or [])
        super().__init__(f"Merge conflict for task {task_id}: {detail}")


class SessionLeakError(CrewError):
    """Raised when a deleted session cannot be verified as gone."""

    def __init__(self, session_id: str, detail: str = "") -> None:
        self.session_id = session_id
        message = f"Session {session_id} still exists after deletion attempt"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DriftAbort(CrewError):
    """Raised when drift is detected and the run is configured to abort on drift."""

    def __init__(self, task_id: str, reasons: Sequence[str]) -> None:
        self.task_id = task_id
        self.reasons = list(reasons)
        super().__init__(f"Context drift in {task_id}: {'; '.join(self.reasons)}")


class WorkspaceError(CrewError):
    """Raised when a task workspace cannot be created or committed."""

    def __init__(self, task_id: str, detail: str) -> None:
        self.task_id = task_id
        super().__init__(f"Workspace error for task {task_id}: {detail}")

"""Define durable task records and the structured results exchanged between components."""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .constants import BACKLOG_SCHEMA_VERSION
from .utils import _normalized_digest, _now_iso


class TaskStatus(str, Enum):
    """Represent the lifecycle state of a backlog task."""

    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    ABANDONED = "abandoned"


ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY, TaskStatus.BLOCKED}),
    TaskStatus.READY: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.REVIEW, TaskStatus.FAILED, TaskStatus.BLOCKED}),
    TaskStatus.REVIEW: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.READY, TaskStatus.ABANDONED}),
    # Only an external edit clears a block.
    TaskStatus.BLOCKED: frozenset({TaskStatus.READY}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.ABANDONED: frozenset(),
}

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.ABANDONED})
SCHEDULABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.READY})


@dataclass
class TaskScope:
    """Hint the worker toward the files a task is expected to touch."""

    files_hint: list[str] = field(default_factory=list)
    estimated_hours: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "TaskScope":
        extra = dict(data or {})
        return cls(
            files_hint=[str(item) for item in list(extra.pop("files_hint", None) or [])],
            estimated_hours=float(extra.pop("estimated_hours", None) or 0.0),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        hours: Any = self.estimated_hours
        if float(hours).is_integer():
            hours = int(hours)
        data: dict[str, Any] = {"files_hint": list(self.files_hint), "estimated_hours": hours}
        data.update(self.extra)
        return data


@dataclass
class TaskContext:
    """Carry the bounded guidance block handed to a worker alongside the task."""

    constraints: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    gotchas: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "TaskContext":
        extra = dict(data or {})
        return cls(
            constraints=[str(item) for item in list(extra.pop("constraints", None) or [])],
            patterns=[str(item) for item in list(extra.pop("patterns", None) or [])],
            gotchas=[str(item) for item in list(extra.pop("gotchas", None) or [])],
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "constraints": list(self.constraints),
            "patterns": list(self.patterns),
            "gotchas": list(self.gotchas),
        }
        data.update(self.extra)
        return data

    def is_empty(self) -> bool:
        return not (self.constraints or self.patterns or self.gotchas)


@dataclass
class Task:
    """Store a unit of delegated work as declared in the backlog manifest."""

    id: str
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    acceptance: list[str] = field(default_factory=list)
    attempts: int = 0
    scope: TaskScope = field(default_factory=TaskScope)
    context: TaskContext = field(default_factory=TaskContext)
    last_error: Optional[str] = None
    spec_version: int = 1
    extra: dict[str, Any] = field(default_factory=dict)
    context_declared: bool = field(default=True, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Create a `Task` from a manifest entry.

        Args:
            data: Raw task mapping from the manifest.

        Returns:
            A `Task` with unknown keys preserved in `extra`.

        Raises:
            ValueError: If the status or numeric fields cannot be coerced.
        """
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        raw_context = _pop("context", None)
        return cls(
            id=str(_pop("id", "")),
            title=str(_pop("title", "") or ""),
            description=str(_pop("description", "") or ""),
            status=TaskStatus(str(_pop("status", TaskStatus.PENDING.value) or TaskStatus.PENDING.value)),
            depends_on=[str(dep) for dep in list(_pop("depends_on", []) or [])],
            acceptance=[str(item) for item in list(_pop("acceptance", []) or [])],
            attempts=int(_pop("attempts", 0) or 0),
            scope=TaskScope.from_dict(_pop("scope", None)),
            context=TaskContext.from_dict(raw_context),
            last_error=_pop("last_error", None),
            spec_version=int(_pop("spec_version", 1) or 1),
            context_declared=raw_context is not None,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the task back into its manifest shape."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "depends_on": list(self.depends_on),
            "acceptance": list(self.acceptance),
            "attempts": int(self.attempts),
            "scope": self.scope.to_dict(),
        }
        if self.context_declared or not self.context.is_empty():
            data["context"] = self.context.to_dict()
        if self.last_error is not None:
            data["last_error"] = self.last_error
        if self.spec_version != 1:
            data["spec_version"] = int(self.spec_version)
        data.update(self.extra)
        return data

    def clone(self) -> "Task":
        return copy.deepcopy(self)


@dataclass
class Backlog:
    """Hold the ordered task graph for one track plus its metadata."""

    track_id: str
    tasks: list[Task] = field(default_factory=list)
    version: str = BACKLOG_SCHEMA_VERSION
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "track_id": self.track_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        data.update(self.extra)
        data["tasks"] = [task.to_dict() for task in self.tasks]
        return data

    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]


@dataclass
class CheckResult:
    """Capture the outcome of a single verification gate command."""

    name: str
    command: str
    passed: bool
    exit_code: int
    output_tail: str = ""
    log_path: Optional[str] = None
    timed_out: bool = False
    first_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckResult":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


@dataclass
class VerificationResult:
    """Capture one attempt's verification gate outcome for audit and rebase input."""

    task_id: str
    attempt: int
    checks: list[CheckResult] = field(default_factory=list)
    files_touched: list[str] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    captured_at: str = field(default_factory=_now_iso)

    @property
    def passed(self) -> bool:
        return self.error is None and all(check.passed for check in self.checks)

    def check(self, name: str) -> Optional[CheckResult]:
        for item in self.checks:
            if item.name == name:
                return item
        return None

    def failed_checks(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]

    @property
    def error_signature(self) -> Optional[str]:
        """Return a stable digest of the failure, or None when the attempt passed."""
        if self.passed:
            return None
        parts = [f"{check.name}:{check.output_tail}" for check in self.failed_checks()]
        if self.error:
            parts.append(f"{self.error_type or 'error'}:{self.error}")
        return _normalized_digest("\n".join(parts))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["passed"] = self.passed
        data["error_signature"] = self.error_signature
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerificationResult":
        return cls(
            task_id=str(data.get("task_id") or ""),
            attempt=int(data.get("attempt") or 0),
            checks=[CheckResult.from_dict(item) for item in list(data.get("checks") or []) if isinstance(item, dict)],
            files_touched=list(data.get("files_touched") or []),
            error=data.get("error"),
            error_type=data.get("error_type"),
            captured_at=str(data.get("captured_at") or _now_iso()),
        )


@dataclass
class ContextFingerprint:
    """Summarize a context payload as its byte size and a structural digest."""

    size: int
    digest: str


@dataclass
class WorkerSession:
    """Bind one backend session and one workspace to one task for a single attempt."""

    task_id: str
    session_id: str
    workspace_path: str
    started_at: str
    deadline: float
    baseline: ContextFingerprint


@dataclass
class DriftSnapshot:
    """Measure a running session's accumulated context at one point in time."""

    task_id: str
    size: int
    task_ids: list[str] = field(default_factory=list)
    planning_markers: list[str] = field(default_factory=list)
    has_full_files: bool = False
    captured_at: str = field(default_factory=_now_iso)


@dataclass
class DriftReport:
    """Advise whether a session drifted away from its baseline."""

    task_id: str
    snapshot: DriftSnapshot
    reasons: list[str] = field(default_factory=list)
    growth: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.reasons


class RebaseAction(str, Enum):
    """Enumerate the Rebase Engine's possible verdicts."""

    REBASE = "rebase"
    RETRY_AS_IS = "retry_as_is"
    ABANDON = "abandon"


@dataclass
class RebaseDecision:
    """Describe what should happen to a failed task next."""

    task_id: str
    action: RebaseAction
    reason: str = ""
    indicators: dict[str, bool] = field(default_factory=dict)
    revised: Optional[Task] = None

    def triggered(self) -> list[str]:
        return [name for name, hit in self.indicators.items() if hit]


@dataclass
class AttemptRecord:
    """Persist one attempt's outcome for the append-only audit trail."""

    task_id: str
    attempt: int
    status: str
    started_at: str
    finished_at: str = field(default_factory=_now_iso)
    duration_seconds: float = 0.0
    context_size: int = 0
    spec_version: int = 1
    verification: Optional[VerificationResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    decision: Optional[str] = None

    @property
    def files_touched(self) -> list[str]:
        return list(self.verification.files_touched) if self.verification else []

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempt": int(self.attempt),
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": round(float(self.duration_seconds), 3),
            "context_size": int(self.context_size),
            "spec_version": int(self.spec_version),
            "files_touched": self.files_touched,
            "verification": self.verification.to_dict() if self.verification else None,
            "error": self.error,
            "error_type": self.error_type,
            "decision": self.decision,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptRecord":
        raw_verification = data.get("verification")
        return cls(
            task_id=str(data.get("task_id") or ""),
            attempt=int(data.get("attempt") or 0),
            status=str(data.get("status") or ""),
            started_at=str(data.get("started_at") or ""),
            finished_at=str(data.get("finished_at") or ""),
            duration_seconds=float(data.get("duration_seconds") or 0.0),
            context_size=int(data.get("context_size") or 0),
            spec_version=int(data.get("spec_version") or 1),
            verification=VerificationResult.from_dict(raw_verification) if isinstance(raw_verification, dict) else None,
            error=data.get("error"),
            error_type=data.get("error_type"),
            decision=data.get("decision"),
        )

"""Bounded worker pool that drains the backlog.

The dispatcher claims ready tasks while a slot is free, then sleeps on a
condition variable until a task finishes; every completion triggers a fresh
`get_ready_tasks()` scan, so newly unblocked dependents start immediately.
Each task runs: workspace -> context -> health probe -> agent session ->
drift check -> verification gate -> merge, and any failure is handed to the
Rebase Engine.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .agents import AgentBackend
from .audit import AuditLog
from .backlog import BacklogManager
from .config import CrewConfig
from .constants import DRIFT_REPORT_FILE, EVENTS_FILE, RUNS_DIR, SPECS_DIR
from .context import ContextBuilder, ContextVerifier
from .drift import DriftDetector
from .errors import (
    CollaboratorError,
    ConflictError,
    ContextError,
    CrewError,
    DriftAbort,
    ExecutionTimeout,
    InvalidTransition,
    SessionLeakError,
    UnhealthyToolchain,
    WorkspaceError,
)
from .health import InstrumentationChecker
from .io_utils import _append_event, _atomic_write_text
from .models import (
    AttemptRecord,
    Backlog,
    RebaseAction,
    Task,
    TaskStatus,
    VerificationResult,
    WorkerSession,
)
from .rebase import RebaseEngine
from .retry import with_retry
from .routing import ModelRouter
from .spec_history import SpecRepository
from .utils import _now_iso
from .verification import VerificationGate
from .workspace import WorkspaceHandle, WorkspaceManager

_STATUS_STYLE = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.ABANDONED: "red",
    TaskStatus.BLOCKED: "yellow",
    TaskStatus.READY: "cyan",
    TaskStatus.PENDING: "dim",
    TaskStatus.IN_PROGRESS: "blue",
    TaskStatus.REVIEW: "blue",
}


@dataclass
class TaskOutcome:
    task_id: str
    attempt: int
    status: TaskStatus
    duration_seconds: float = 0.0
    error: Optional[str] = None
    error_type: Optional[str] = None
    decision: Optional[str] = None
    files: list[str] = field(default_factory=list)


@dataclass
class RunSummary:
    outcomes: list[TaskOutcome] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    peak_in_flight: int = 0
    session_leaks: list[str] = field(default_factory=list)
    interrupted: bool = False
    halted_by: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.session_leaks and self.halted_by is None and not self.interrupted


class WorkerPool:
    def __init__(
        self,
        backlog: BacklogManager,
        *,
        agent: AgentBackend,
        workspaces: WorkspaceManager,
        state_dir: Path,
        project_dir: Optional[Path] = None,
        config: Optional[CrewConfig] = None,
        builder: Optional[ContextBuilder] = None,
        health: Optional[InstrumentationChecker] = None,
        gate: Optional[VerificationGate] = None,
        drift: Optional[DriftDetector] = None,
        rebase: Optional[RebaseEngine] = None,
        audit: Optional[AuditLog] = None,
        router: Optional[ModelRouter] = None,
        console: Optional[Console] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backlog = backlog
        self.agent = agent
        self.workspaces = workspaces
        self.state_dir = state_dir
        self.project_dir = project_dir
        self.config = config or CrewConfig()
        self.builder = builder
        self.health = health or InstrumentationChecker(self.config.verify, log_dir=state_dir / "health")
        self.gate = gate or VerificationGate(self.config.verify, logs_dir=state_dir / RUNS_DIR)
        self.drift = drift
        self.audit = audit or AuditLog(state_dir / RUNS_DIR)
        self.rebase = rebase or RebaseEngine(
            self.config.rebase,
            backlog=backlog,
            workspaces=workspaces,
            specs=SpecRepository(state_dir / SPECS_DIR),
        )
        self.router = router or ModelRouter(self.config.workers.models)
        self.console = console or Console()
        self.sleep = sleep
        self.events_path = state_dir / EVENTS_FILE

        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._halt_error: Optional[BaseException] = None
        self._in_flight: set[str] = set()
        self._sessions: dict[str, str] = {}
        self._sessions_lock = threading.Lock()
        self._summary = RunSummary()
        self._summary_lock = threading.Lock()

    # -- public API ------------------------------------------------------------

    def run(self, backlog: Optional[Backlog] = None, concurrency_limit: Optional[int] = None) -> RunSummary:
        """Drain ready tasks with at most `concurrency_limit` in flight.

        Raises:
            UnhealthyToolchain: If the tool chain fails its probes, before any
                task is dispatched on the affected workspace.
            InvalidTransition: On a state machine invariant violation.
        """
        if backlog is not None:
            self.backlog.attach(backlog)
        limit = int(concurrency_limit or self.config.workers.concurrency)
        if limit < 1:
            raise ValueError("concurrency_limit must be at least 1")

        self._stop.clear()
        self._halt_error = None
        self._summary = RunSummary()
        self._prepare()
        self._recover_interrupted()

        if self.config.verify.health_check and self.project_dir is not None:
            try:
                self.health.verify_healthy(self.project_dir)
            except UnhealthyToolchain as exc:
                self._event("health_failed", workspace=str(self.project_dir), issues=exc.issues)
                self._summary.halted_by = str(exc)
                raise

        slots = threading.BoundedSemaphore(limit)
        logger.info("Running backlog {} with concurrency {}", self.backlog.backlog.track_id, limit)
        with concurrent.futures.ThreadPoolExecutor(max_workers=limit, thread_name_prefix="crew-task") as executor:
            with self._cond:
                while True:
                    if not self._stop.is_set() and self._halt_error is None:
                        self._dispatch_ready(executor, slots)
                    if not self._in_flight:
                        break
                    self._cond.wait()

        blocked = self.backlog.block_unreachable()
        for task_id in blocked:
            logger.warning("Task {} blocked: a dependency can no longer complete", task_id)
        self._save()
        if self.drift is not None:
            _atomic_write_text(self.state_dir / DRIFT_REPORT_FILE, self.drift.report())

        self._summary.counts = self.backlog.stats()
        self._summary.interrupted = self._stop.is_set()
        if self._halt_error is not None:
            self._summary.halted_by = str(self._halt_error)
            raise self._halt_error
        return self._summary

    @property
    def summary(self) -> RunSummary:
        """Summary of the current or most recent run, also after a halt."""
        return self._summary

    def request_shutdown(self) -> None:
        """Stop new dispatches and cancel every in-flight session."""
        if self._stop.is_set():
            return
        self._stop.set()
        with self._sessions_lock:
            sessions = list(self._sessions.values())
        for session_id in sessions:
            try:
                self.agent.cancel(session_id)
            except CrewError as exc:
                logger.error("Failed to cancel session {}: {}", session_id, exc)
        # May be called from a signal handler on the dispatcher's thread.
        threading.Thread(target=self._wake, name="crew-wake", daemon=True).start()

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    # -- dispatch --------------------------------------------------------------

    def _prepare(self) -> None:
        if self.builder is None:
            verifier = ContextVerifier(self.config.limits, known_task_ids=self.backlog.backlog.task_ids())
            self.builder = ContextBuilder(verifier)
        self.rebase.builder = self.builder
        if self.drift is None:
            self.drift = DriftDetector(self.builder.verifier)

    def _recover_interrupted(self) -> None:
        """Fail tasks left mid-flight by a previous run, then settle every failed task."""
        for task in self.backlog.all_tasks():
            if task.status in {TaskStatus.IN_PROGRESS, TaskStatus.REVIEW}:
                logger.warning("Task {} was interrupted while {}", task.id, task.status.value)
                self.backlog.transition(task.id, task.status, TaskStatus.FAILED, error="Interrupted by a previous run")
        for task in self.backlog.all_tasks():
            if task.status == TaskStatus.FAILED:
                history = self.audit.history(task.id)
                last = history[-1].verification if history else None
                self._settle_failure(task, last, context_size=0, duration=0.0)

    def _dispatch_ready(self, executor: concurrent.futures.ThreadPoolExecutor, slots: threading.BoundedSemaphore) -> None:
        for task in self.backlog.get_ready_tasks():
            if task.id in self._in_flight:
                continue
            if not slots.acquire(blocking=False):
                return
            try:
                if task.status == TaskStatus.PENDING:
                    self.backlog.transition(task.id, TaskStatus.PENDING, TaskStatus.READY)
                self.backlog.transition(task.id, TaskStatus.READY, TaskStatus.IN_PROGRESS)
            except InvalidTransition as exc:
                slots.release()
                logger.warning("Skipping {}: {}", task.id, exc)
                continue
            attempt = self.backlog.record_attempt(task.id)
            self._in_flight.add(task.id)
            self._summary.peak_in_flight = max(self._summary.peak_in_flight, len(self._in_flight))
            logger.info("Dispatching {} (attempt {}, {} in flight)", task.id, attempt, len(self._in_flight))
            self._event("task_dispatched", task_id=task.id, attempt=attempt)
            future = executor.submit(self._run_task, task.id, attempt)
            future.add_done_callback(lambda fut, task_id=task.id: self._on_done(task_id, fut, slots))

    def _on_done(self, task_id: str, future: concurrent.futures.Future, slots: threading.BoundedSemaphore) -> None:
        exc = future.exception()
        with self._cond:
            if exc is not None and self._halt_error is None:
                self._halt_error = exc
                logger.error("Halting dispatch after {} raised: {}", task_id, exc)
            self._in_flight.discard(task_id)
            slots.release()
            self._cond.notify_all()

    # -- per task --------------------------------------------------------------

    def _run_task(self, task_id: str, attempt: int) -> None:
        assert self.builder is not None and self.drift is not None
        task = self.backlog.get_task(task_id)
        started_at = _now_iso()
        start = time.monotonic()
        deadline = start + self.config.workers.task_timeout_seconds
        handle: Optional[WorkspaceHandle] = None
        session_id: Optional[str] = None
        verification: Optional[VerificationResult] = None
        context_size = 0
        files: list[str] = []
        error: Optional[str] = None
        error_type: Optional[str] = None
        decision: Optional[str] = None

        try:
            handle = self.workspaces.create(task_id)
            context = self.builder.build_or_compress(task)
            context_size = context.size

            if self.config.verify.health_check:
                self.health.verify_healthy(handle.path)

            session_id = self.agent.create_session(f"Task {task_id}")
            with self._sessions_lock:
                self._sessions[task_id] = session_id
            session = WorkerSession(
                task_id=task_id,
                session_id=session_id,
                workspace_path=str(handle.path),
                started_at=started_at,
                deadline=deadline,
                baseline=context.fingerprint,
            )
            self.drift.record_baseline(session)
            model = self.router.model_for(task)
            workers = self.config.workers
            with_retry(
                lambda: self.agent.submit(
                    session_id,
                    context.text,
                    deadline_seconds=deadline - time.monotonic(),
                    cwd=handle.path,
                    model=model,
                ),
                attempts=workers.retry_attempts,
                base_delay=workers.retry_base_delay_seconds,
                max_delay=workers.retry_max_delay_seconds,
                sleep=self.sleep,
                cancel_event=self._stop,
                label=f"{task_id} agent call",
            )

            report = self.drift.check(session, self.agent.transcript(session_id))
            if not report.ok:
                logger.warning("Drift alert for {}: {}", task_id, "; ".join(report.reasons))
                self._event("drift_alert", task_id=task_id, reasons=report.reasons, growth=report.growth)
                if self.config.limits.abort_on_drift:
                    raise DriftAbort(task_id, report.reasons)

            live, session_id = session_id, None
            self._close_session(task_id, live)

            files = self.workspaces.changed_files(handle)
            verification = self.gate.run(task_id, attempt, handle.path, files_touched=files)
            if not verification.passed:
                failed = ", ".join(check.name for check in verification.failed_checks())
                raise _GateFailed(f"Verification failed: {failed}")

            self.backlog.transition(task_id, TaskStatus.IN_PROGRESS, TaskStatus.REVIEW)
            try:
                self.workspaces.merge(handle)
            except (ConflictError, WorkspaceError) as exc:
                verification.error = str(exc)
                verification.error_type = _error_type(exc)
                raise
            self.backlog.transition(task_id, TaskStatus.REVIEW, TaskStatus.COMPLETED)

        except UnhealthyToolchain as exc:
            error, error_type = str(exc), "unhealthy_toolchain"
            self._event("health_failed", task_id=task_id, workspace=exc.workspace, issues=exc.issues)
            self.backlog.transition(task_id, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, error=error)
            raise
        except (
            _GateFailed,
            ContextError,
            ExecutionTimeout,
            CollaboratorError,
            ConflictError,
            DriftAbort,
            SessionLeakError,
            WorkspaceError,
        ) as exc:
            error, error_type = str(exc), _error_type(exc)
            if verification is None:
                verification = VerificationResult(
                    task_id=task_id, attempt=attempt, files_touched=files, error=error, error_type=error_type
                )
            decision = self._fail(task_id, verification, error, context_size, time.monotonic() - start)
        finally:
            if session_id is not None:
                try:
                    self._close_session(task_id, session_id)
                except SessionLeakError as exc:
                    logger.error("{}", exc)
            if handle is not None:
                self.workspaces.discard(task_id)
            duration = time.monotonic() - start
            final = self.backlog.get_task(task_id)
            self.audit.record(
                AttemptRecord(
                    task_id=task_id,
                    attempt=attempt,
                    status=TaskStatus.FAILED.value if error_type else final.status.value,
                    started_at=started_at,
                    duration_seconds=duration,
                    context_size=context_size,
                    spec_version=task.spec_version,
                    verification=verification,
                    error=error,
                    error_type=error_type,
                    decision=decision,
                )
            )
            outcome = TaskOutcome(
                task_id=task_id,
                attempt=attempt,
                status=final.status,
                duration_seconds=duration,
                error=error,
                error_type=error_type,
                decision=decision,
                files=files,
            )
            with self._summary_lock:
                self._summary.outcomes.append(outcome)
            self._print_outcome(outcome)
            self._save()

    def _close_session(self, task_id: str, session_id: str) -> None:
        """Delete the session and verify it is gone."""
        assert self.builder is not None
        try:
            self.agent.delete_session(session_id)
            self.builder.verifier.verify_deleted(self.agent, session_id, sleep=self.sleep)
        except SessionLeakError:
            with self._summary_lock:
                self._summary.session_leaks.append(session_id)
            raise
        finally:
            with self._sessions_lock:
                self._sessions.pop(task_id, None)

    def _fail(
        self,
        task_id: str,
        verification: VerificationResult,
        error: str,
        context_size: int,
        duration: float,
    ) -> Optional[str]:
        current = self.backlog.get_task(task_id)
        self.backlog.transition(task_id, current.status, TaskStatus.FAILED, error=error)
        logger.warning("Task {} failed: {}", task_id, error)
        self._event("task_failed", task_id=task_id, attempt=current.attempts, error=error)
        if self._stop.is_set():
            return None
        task = self.backlog.get_task(task_id)
        return self._settle_failure(task, verification, context_size=context_size, duration=duration)

    def _settle_failure(
        self,
        task: Task,
        verification: Optional[VerificationResult],
        *,
        context_size: int,
        duration: float,
    ) -> str:
        """Ask the Rebase Engine what to do with a failed task and apply it."""
        history = self.audit.history(task.id)
        decision = self.rebase.evaluate(
            task,
            verification,
            history,
            context_size=context_size,
            duration_seconds=duration,
        )
        try:
            self.rebase.apply(task, decision, verification)
        except (ContextError, ValueError) as exc:
            logger.error("Could not rebase {}: {}; abandoning", task.id, exc)
            self.backlog.transition(task.id, TaskStatus.FAILED, TaskStatus.ABANDONED, error=str(exc))
            self._event("task_abandoned", task_id=task.id, reason=str(exc))
            return RebaseAction.ABANDON.value
        self._event(
            "rebase_decision",
            task_id=task.id,
            action=decision.action.value,
            reason=decision.reason,
            indicators=decision.triggered(),
        )
        return decision.action.value

    # -- output ----------------------------------------------------------------

    def _save(self) -> None:
        if self.backlog.manifest_path is not None:
            self.backlog.save()

    def _event(self, name: str, **payload: Any) -> None:
        _append_event(self.events_path, {"event": name, **payload})

    def _print_outcome(self, outcome: TaskOutcome) -> None:
        style = _STATUS_STYLE.get(outcome.status, "white")
        line = f"[{style}]{outcome.task_id}[/{style}] attempt {outcome.attempt}: {outcome.status.value} ({outcome.duration_seconds:.1f}s)"
        if outcome.error:
            line += f" [dim]{outcome.error.splitlines()[0][:120]}[/dim]"
        if outcome.decision:
            line += f" -> {outcome.decision}"
        self.console.print(line, highlight=False)


class _GateFailed(CrewError):
    """The verification gate rejected the attempt."""


def _error_type(exc: BaseException) -> str:
    if isinstance(exc, _GateFailed):
        return "verification"
    if isinstance(exc, ExecutionTimeout):
        return "timeout"
    if isinstance(exc, CollaboratorError):
        return "collaborator"
    if isinstance(exc, ConflictError):
        return "conflict"
    if isinstance(exc, DriftAbort):
        return "drift"
    if isinstance(exc, SessionLeakError):
        return "session_leak"
    if isinstance(exc, ContextError):
        return "context"
    if isinstance(exc, WorkspaceError):
        return "workspace"
    return exc.__class__.__name__


def render_summary(summary: RunSummary, console: Optional[Console] = None) -> Table:
    """Print the final counts-by-status table."""
    console = console or Console()
    table = Table(title="Run summary")
    table.add_column("Status")
    table.add_column("Tasks", justify="right")
    for status in TaskStatus:
        count = summary.counts.get(status.value, 0)
        if count:
            style = _STATUS_STYLE.get(status, "white")
            table.add_row(f"[{style}]{status.value}[/{style}]", str(count))
    console.print(table)
    console.print(
        f"Attempts this run: {len(summary.outcomes)}; peak concurrency: {summary.peak_in_flight}",
        highlight=False,
    )
    if summary.session_leaks:
        console.print(f"[red]Unverified session deletions:[/red] {', '.join(summary.session_leaks)}")
    if summary.interrupted:
        console.print("[yellow]Run interrupted; in-flight tasks were cancelled and cleaned up.[/yellow]")
    return table

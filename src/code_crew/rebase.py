"""Decide what happens to a failed task, and replace its spec when needed.

A rebase replaces the task's specification rather than patching its output:
the revised spec carries the failure evidence and a negative-evidence note,
is saved as a new version, and the task re-enters `ready` with a fresh
workspace at its next dispatch.
"""

from __future__ import annotations

import fnmatch
import re
from typing import Any, Optional, Sequence

from loguru import logger

from .backlog import BacklogManager
from .config import RebaseConfig
from .context import ContextBuilder, compress
from .models import (
    AttemptRecord,
    RebaseAction,
    RebaseDecision,
    Task,
    TaskContext,
    TaskStatus,
    VerificationResult,
)
from .spec_history import SpecRepository
from .utils import _truncate
from .workspace import WorkspaceManager

_ERROR_PATTERNS = (
    re.compile(r"error:", re.I),
    re.compile(r"exception:", re.I),
    re.compile(r"failed to", re.I),
    re.compile(r"cannot find", re.I),
    re.compile(r"undefined is not", re.I),
    re.compile(r"type ?error", re.I),
)
_EVIDENCE_MARKER = "\n\nPrevious failure"
_SCOPE_PREFIX = "Only modify: "

# Any of these alone forces a rebase; the rest need company.
HARD_INDICATORS = ("high_attempts", "scope_escape", "repeated_failure")
SOFT_INDICATORS = ("error_patterns", "large_context", "long_duration")


def files_outside_scope(files: Sequence[str], files_hint: Sequence[str]) -> list[str]:
    """Files not covered by any hint (exact path, directory prefix or glob)."""
    if not files_hint:
        return []
    outside = []
    for path in files:
        covered = False
        for hint in files_hint:
            hint = hint.rstrip("/")
            if path == hint or path.startswith(hint + "/") or fnmatch.fnmatch(path, hint):
                covered = True
                break
        if not covered:
            outside.append(path)
    return outside


def failure_text(result: Optional[VerificationResult]) -> str:
    if result is None:
        return ""
    parts = [check.output_tail for check in result.failed_checks()]
    if result.error:
        parts.append(result.error)
    return "\n".join(parts)


def failure_summary(result: Optional[VerificationResult]) -> str:
    """One line describing why the attempt failed."""
    if result is None:
        return "unknown failure"
    failed = result.failed_checks()
    if failed:
        first = failed[0]
        detail = first.first_error or f"exit {first.exit_code}"
        return f"{first.name} failed: {detail}"
    if result.error:
        lines = result.error.strip().splitlines()
        return f"{result.error_type or 'error'}: {lines[0] if lines else result.error}"
    return "unknown failure"


class RebaseEngine:
    def __init__(
        self,
        config: Optional[RebaseConfig] = None,
        *,
        backlog: Optional[BacklogManager] = None,
        workspaces: Optional[WorkspaceManager] = None,
        specs: Optional[SpecRepository] = None,
        builder: Optional[ContextBuilder] = None,
    ) -> None:
        self.config = config or RebaseConfig()
        self.backlog = backlog
        self.workspaces = workspaces
        self.specs = specs
        self.builder = builder or ContextBuilder()

    # -- evaluation ------------------------------------------------------------

    def indicators(
        self,
        task: Task,
        result: Optional[VerificationResult],
        history: Sequence[AttemptRecord] = (),
        *,
        context_size: int = 0,
        duration_seconds: float = 0.0,
    ) -> dict[str, bool]:
        signature = result.error_signature if result is not None else None
        previous = {
            record.verification.error_signature
            for record in history
            if record.verification is not None
            and record.verification.attempt != (result.attempt if result else None)
        }
        escaped = []
        if self.config.detect_scope_escape and result is not None:
            escaped = files_outside_scope(result.files_touched, task.scope.files_hint)
        text = failure_text(result)
        return {
            "high_attempts": task.attempts >= self.config.threshold,
            "scope_escape": bool(escaped),
            "repeated_failure": signature is not None and signature in previous,
            "error_patterns": any(pattern.search(text) for pattern in _ERROR_PATTERNS),
            "large_context": context_size > self.config.max_context_bytes,
            "long_duration": duration_seconds > self.config.max_duration_seconds,
        }

    def evaluate(
        self,
        task: Task,
        result: Optional[VerificationResult],
        history: Sequence[AttemptRecord] = (),
        *,
        context_size: int = 0,
        duration_seconds: float = 0.0,
    ) -> RebaseDecision:
        """Recommend `rebase`, `retry_as_is` or `abandon` for a failed attempt."""
        indicators = self.indicators(
            task, result, history, context_size=context_size, duration_seconds=duration_seconds
        )
        triggered = [name for name, hit in indicators.items() if hit]

        if task.attempts >= self.config.max_attempts:
            return RebaseDecision(
                task_id=task.id,
                action=RebaseAction.ABANDON,
                reason=f"{task.attempts} attempts reached the ceiling of {self.config.max_attempts}",
                indicators=indicators,
            )
        hard = [name for name in HARD_INDICATORS if indicators[name]]
        soft = [name for name in SOFT_INDICATORS if indicators[name]]
        gate_evidence = result is not None and bool(result.failed_checks())
        if hard or len(soft) >= 2 or gate_evidence:
            reasons = hard + soft if (hard or soft) else ["verification gate failed"]
            return RebaseDecision(
                task_id=task.id,
                action=RebaseAction.REBASE,
                reason=f"Messy run detected: {', '.join(reasons)}",
                indicators=indicators,
            )
        return RebaseDecision(
            task_id=task.id,
            action=RebaseAction.RETRY_AS_IS,
            reason=f"Infrastructure failure without gate evidence ({failure_summary(result)})"
            + (f"; indicators: {', '.join(triggered)}" if triggered else ""),
            indicators=indicators,
        )

    # -- synthesis -------------------------------------------------------------

    def negative_evidence(self, task: Task, decision: RebaseDecision, result: Optional[VerificationResult]) -> str:
        limit = self.builder.limits.max_statement_chars - 1
        if decision.indicators.get("scope_escape") and result is not None:
            outside = files_outside_scope(result.files_touched, task.scope.files_hint)
            avoid = f"editing {outside[0]}"
            cause = "out-of-scope changes"
        elif decision.indicators.get("repeated_failure"):
            avoid = "repeating the last approach"
            cause = failure_summary(result)
        else:
            avoid = f"the attempt {task.attempts} approach"
            cause = failure_summary(result)
        return _truncate(f"Avoid {avoid} because it caused {cause}", limit)

    def synthesize(self, task: Task, decision: RebaseDecision, result: Optional[VerificationResult]) -> Task:
        """Build the revised task: original spec + failure evidence + negative-evidence note."""
        revised = task.clone()
        limits = self.builder.limits
        base_description = task.description.split(_EVIDENCE_MARKER, 1)[0].rstrip()
        evidence = _truncate(failure_summary(result), 200)
        revised.description = f"{base_description}{_EVIDENCE_MARKER} (attempt {task.attempts}): {evidence}"

        gotchas = [item for item in task.context.gotchas]
        gotchas.append(self.negative_evidence(task, decision, result))
        if limits.max_gotchas > 0:
            gotchas = gotchas[-limits.max_gotchas:]
        else:
            gotchas = []

        constraints = list(task.context.constraints)
        if decision.indicators.get("scope_escape") and task.scope.files_hint:
            constraints = [item for item in constraints if not item.startswith(_SCOPE_PREFIX)]
            scope_rule = _truncate(_SCOPE_PREFIX + ", ".join(task.scope.files_hint), limits.max_statement_chars - 1)
            constraints = [scope_rule] + constraints
        constraints = constraints[: limits.max_constraints]

        revised.context = TaskContext(
            constraints=constraints,
            patterns=list(task.context.patterns),
            gotchas=gotchas,
            extra=dict(task.context.extra),
        )
        revised, steps = compress(revised, self.builder)
        if steps:
            logger.debug("Revised spec for {} compressed via {}", task.id, ", ".join(steps))
        return revised

    # -- application -----------------------------------------------------------

    def _spec_content(self, task: Task, result: Optional[VerificationResult]) -> dict[str, Any]:
        return {
            "title": task.title,
            "description": task.description,
            "acceptance": list(task.acceptance),
            "scope": task.scope.to_dict(),
            "context": task.context.to_dict(),
            "failure_evidence": failure_summary(result) if result is not None else None,
        }

    def rebase(self, task: Task, decision: RebaseDecision, result: Optional[VerificationResult]) -> Task:
        """Persist a revised spec, drop the old workspace and re-ready the task.

        Raises:
            ValueError: If the revision would leave the spec unchanged.
        """
        if self.backlog is None:
            raise RuntimeError("RebaseEngine.rebase needs a BacklogManager")
        revised = decision.revised or self.synthesize(task, decision, result)
        if revised.description == task.description and revised.context == task.context:
            raise ValueError(f"Refusing to retry {task.id} with an unchanged spec")

        new_version = task.spec_version + 1
        if self.specs is not None:
            if not self.specs.versions(task.id):
                self.specs.save(task.id, self._spec_content(task, None), "original", version=task.spec_version)
            new_version = self.specs.save(
                task.id,
                self._spec_content(revised, result),
                decision.reason or "rebase",
                version=max(new_version, (self.specs.versions(task.id) or [0])[-1] + 1),
            )

        self.backlog.revise(
            task.id,
            description=revised.description,
            context=revised.context,
            spec_version=new_version,
        )
        if self.workspaces is not None:
            self.workspaces.discard(task.id)
        updated = self.backlog.transition(task.id, TaskStatus.FAILED, TaskStatus.READY)
        logger.info("Rebased {} to spec v{}: {}", task.id, new_version, decision.reason)
        return updated

    def apply(self, task: Task, decision: RebaseDecision, result: Optional[VerificationResult]) -> Task:
        """Carry out `decision` for a task currently in `failed`."""
        if self.backlog is None:
            raise RuntimeError("RebaseEngine.apply needs a BacklogManager")
        if decision.action == RebaseAction.ABANDON:
            logger.warning("Abandoning {}: {}", task.id, decision.reason)
            return self.backlog.transition(task.id, TaskStatus.FAILED, TaskStatus.ABANDONED, error=decision.reason)
        if decision.action == RebaseAction.RETRY_AS_IS:
            logger.info("Retrying {} as-is: {}", task.id, decision.reason)
            if self.workspaces is not None:
                self.workspaces.discard(task.id)
            return self.backlog.transition(task.id, TaskStatus.FAILED, TaskStatus.READY)
        return self.rebase(task, decision, result)

    def analyze_batch(self, records: Sequence[AttemptRecord], tasks: dict[str, Task]) -> dict[str, Any]:
        """Summarize which failed attempts would be rebased."""
        recommendations: list[dict[str, str]] = []
        failed = [record for record in records if record.status == TaskStatus.FAILED.value]
        for record in failed:
            task = tasks.get(record.task_id)
            if task is None:
                continue
            history = [other for other in records if other.task_id == record.task_id and other.attempt < record.attempt]
            probe = task.clone()
            probe.attempts = record.attempt
            decision = self.evaluate(
                probe,
                record.verification,
                history,
                context_size=record.context_size,
                duration_seconds=record.duration_seconds,
            )
            if decision.action != RebaseAction.RETRY_AS_IS:
                recommendations.append(
                    {"task_id": record.task_id, "action": decision.action.value, "reason": decision.reason}
                )
        return {
            "total_attempts": len(records),
            "failed_attempts": len(failed),
            "needs_rebase": sum(1 for item in recommendations if item["action"] == RebaseAction.REBASE.value),
            "recommendations": recommendations,
        }

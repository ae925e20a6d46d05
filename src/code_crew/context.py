"""Build, verify and compress the minimal context handed to a worker session.

Every payload that reaches an agent passes through `ContextVerifier.verify`:
it must fit the byte ceiling, mention exactly one task, and carry neither
planning vocabulary nor full-file dumps. `compress` shrinks a task until its
rendered context satisfies those rules, never touching acceptance criteria.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from .config import LimitsConfig
from .constants import (
    DEFAULT_TASK_ID_PATTERN,
    FULL_FILE_LINE_THRESHOLD,
    MAX_DESCRIPTION_CHARS,
    MAX_FILES_HINT,
    MAX_PATTERN_CHARS,
    MAX_PATTERNS,
    MAX_TITLE_CHARS,
    MIN_DESCRIPTION_CHARS,
    PLANNING_KEYWORDS,
)
from .errors import ContextError, ForbiddenContent, OverBudget, SessionLeakError
from .models import ContextFingerprint, Task, TaskContext
from .prompts import _build_task_prompt
from .retry import with_retry
from .utils import _byte_size, _digest, _truncate

_FILE_MARKER_RE = re.compile(r"^(?://|#)\s*(?:File|file):\s")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_PATTERN_REF_RE = re.compile(
    r"^(?P<path>[^\s:]+):(?P<start>\d+)-(?P<end>\d+)\s+(?:(?:-|–|—)\s+)?(?P<desc>\S.*)$"
)
_FILE_PATH_RE = re.compile(r"(?:src|lib|test|tests)/[\w/\-.]+\.\w+")
_HEADING_RE = re.compile(r"^#{1,6}\s+(.+?)\s*$", re.M)
# Known ids are only scanned when they look like identifiers, so plain ids
# such as "A" do not match ordinary prose.
_ID_SHAPED_RE = re.compile(r"^[A-Za-z][\w-]*\d[\w-]*$")


@dataclass
class ContextMetrics:
    size: int
    unique_files: int = 0
    task_ids: list[str] = field(default_factory=list)
    planning_keywords: list[str] = field(default_factory=list)
    has_full_files: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "unique_files": self.unique_files,
            "task_ids": list(self.task_ids),
            "planning_keywords": list(self.planning_keywords),
            "has_full_files": self.has_full_files,
        }


@dataclass
class CompressedContext:
    """A verified worker payload for one task."""

    task_id: str
    text: str
    metrics: ContextMetrics
    fingerprint: ContextFingerprint
    compressed: bool = False
    steps: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return self.metrics.size


def structural_fingerprint(text: str) -> ContextFingerprint:
    """Byte size plus a digest of the section headings."""
    headings = [match.group(1) for match in _HEADING_RE.finditer(text or "")]
    return ContextFingerprint(size=_byte_size(text or ""), digest=_digest("\n".join(headings)))


def parse_pattern_ref(pattern: str) -> Optional[dict[str, Any]]:
    """Parse `path:start-end description`; returns None for anything else."""
    if "\n" in pattern.strip():
        return None
    match = _PATTERN_REF_RE.match(pattern.strip())
    if not match:
        return None
    start, end = int(match.group("start")), int(match.group("end"))
    if start < 1 or end < start:
        return None
    return {"path": match.group("path"), "start": start, "end": end, "description": match.group("desc")}


class ContextVerifier:
    """Enforce context hygiene on rendered payloads."""

    def __init__(
        self,
        limits: Optional[LimitsConfig] = None,
        *,
        known_task_ids: Iterable[str] = (),
        task_id_pattern: str = DEFAULT_TASK_ID_PATTERN,
        planning_keywords: Iterable[str] = PLANNING_KEYWORDS,
    ) -> None:
        self.limits = limits or LimitsConfig()
        self.task_id_re = re.compile(task_id_pattern)
        self.planning_keywords = tuple(planning_keywords)
        self.known_task_ids = [tid for tid in known_task_ids if _ID_SHAPED_RE.match(tid)]

    def analyze(self, text: str) -> ContextMetrics:
        return ContextMetrics(
            size=_byte_size(text),
            unique_files=len(set(_FILE_PATH_RE.findall(text))),
            task_ids=self.extract_task_ids(text),
            planning_keywords=self.find_planning_keywords(text),
            has_full_files=self.detect_full_files(text),
        )

    def verify(self, payload: str, task_id: str) -> ContextMetrics:
        """Check a payload bound for `task_id`'s session.

        Raises:
            OverBudget: If the payload exceeds the byte ceiling.
            ForbiddenContent: For planning vocabulary, foreign task ids or full-file dumps.
        """
        metrics = self.analyze(payload)
        if metrics.size >= self.limits.max_context_bytes:
            raise OverBudget(
                f"Task {task_id} context too large: {metrics.size} bytes (must stay below {self.limits.max_context_bytes})",
                issues=["size"],
            )
        issues: list[str] = []
        if metrics.planning_keywords:
            issues.append(f"planning vocabulary: {', '.join(metrics.planning_keywords[:3])}")
        foreign = [tid for tid in metrics.task_ids if tid != task_id]
        if foreign:
            issues.append(f"foreign task ids: {', '.join(foreign)}")
        if metrics.has_full_files:
            issues.append("full file contents (use path and line ranges)")
        if issues:
            raise ForbiddenContent(f"Task {task_id} context rejected: {'; '.join(issues)}", issues=issues)
        return metrics

    def verify_deleted(
        self,
        backend: Any,
        session_id: str,
        *,
        attempts: int = 3,
        delay: float = 0.5,
        sleep=time.sleep,
    ) -> None:
        """Confirm a deleted session is gone.

        Raises:
            SessionLeakError: If the backend still reports the session after every check.
        """

        def _check() -> None:
            if backend.session_exists(session_id):
                raise SessionLeakError(session_id, "backend still reports it")

        with_retry(
            _check,
            attempts=attempts,
            base_delay=delay,
            max_delay=delay * 4,
            retry_on=lambda exc: isinstance(exc, SessionLeakError),
            sleep=sleep,
            label=f"verify deletion of {session_id}",
        )

    def extract_task_ids(self, text: str) -> list[str]:
        found: list[str] = []
        for match in self.task_id_re.finditer(text):
            if match.group(0) not in found:
                found.append(match.group(0))
        for tid in self.known_task_ids:
            if tid not in found and re.search(rf"(?<![\w-]){re.escape(tid)}(?![\w-])", text):
                found.append(tid)
        return found

    def find_planning_keywords(self, text: str) -> list[str]:
        lower = text.lower()
        return [kw for kw in self.planning_keywords if kw.lower() in lower]

    def detect_full_files(self, text: str) -> bool:
        current_marker = False
        marker_lines = 0
        in_fence = False
        fence_lines = 0
        for line in text.splitlines():
            if _FENCE_RE.match(line):
                if in_fence and fence_lines > FULL_FILE_LINE_THRESHOLD:
                    return True
                in_fence = not in_fence
                fence_lines = 0
                continue
            if in_fence:
                fence_lines += 1
            if _FILE_MARKER_RE.match(line):
                if current_marker and marker_lines > FULL_FILE_LINE_THRESHOLD:
                    return True
                current_marker = True
                marker_lines = 0
            elif current_marker:
                marker_lines += 1
        if in_fence and fence_lines > FULL_FILE_LINE_THRESHOLD:
            return True
        return current_marker and marker_lines > FULL_FILE_LINE_THRESHOLD


def render_task_context(task: Task) -> str:
    sections: list[str] = [f"# Task {task.id}: {task.title}", ""]

    sections.append("## Specification")
    sections.append(task.description.strip())
    sections.append("")

    sections.append("## Acceptance Criteria")
    for criterion in task.acceptance:
        sections.append(f"- {criterion}")
    sections.append("")

    if task.scope.files_hint:
        sections.append("## Files")
        for path in task.scope.files_hint[:MAX_FILES_HINT]:
            sections.append(f"- {path}")
        sections.append("")

    for heading, items in (
        ("Constraints", task.context.constraints),
        ("Patterns", task.context.patterns),
        ("Gotchas", task.context.gotchas),
    ):
        if not items:
            continue
        sections.append(f"## {heading}")
        for item in items:
            sections.append(f"- {item}")
        sections.append("")

    return "\n".join(sections).rstrip() + "\n"


class ContextBuilder:
    """Render a task into its worker payload and enforce the context rules."""

    def __init__(
        self,
        verifier: Optional[ContextVerifier] = None,
        *,
        wrap: Callable[[str], str] = _build_task_prompt,
    ) -> None:
        self.verifier = verifier or ContextVerifier()
        self.limits = self.verifier.limits
        self.wrap = wrap

    def render(self, task: Task) -> str:
        return self.wrap(render_task_context(task))

    def check_task(self, task: Task) -> None:
        """Validate the task's bounded context block before rendering.

        Raises:
            OverBudget: For count or length violations.
            ForbiddenContent: For pattern references that carry code bodies.
        """
        limits = self.limits
        ctx = task.context
        over: list[str] = []
        if len(ctx.constraints) > limits.max_constraints:
            over.append(f"{len(ctx.constraints)} constraints (max {limits.max_constraints})")
        if len(ctx.gotchas) > limits.max_gotchas:
            over.append(f"{len(ctx.gotchas)} gotchas (max {limits.max_gotchas})")
        if len(ctx.patterns) > MAX_PATTERNS:
            over.append(f"{len(ctx.patterns)} patterns (max {MAX_PATTERNS})")
        for label, items in (("constraint", ctx.constraints), ("gotcha", ctx.gotchas)):
            for item in items:
                if len(item) >= limits.max_statement_chars:
                    over.append(f"{label} of {len(item)} chars (must be under {limits.max_statement_chars})")
        if over:
            raise OverBudget(f"Task {task.id} context exceeds limits: {'; '.join(over)}", issues=over)

        bad_patterns = [
            _truncate(pattern.splitlines()[0] if pattern.strip() else pattern, 40)
            for pattern in ctx.patterns
            if parse_pattern_ref(pattern) is None or len(pattern) > MAX_PATTERN_CHARS
        ]
        if bad_patterns:
            issues = [f"pattern is not 'path:start-end description': {item!r}" for item in bad_patterns]
            raise ForbiddenContent(f"Task {task.id} has invalid pattern references", issues=issues)

    def build(self, task: Task) -> CompressedContext:
        """Render and verify the worker payload for `task`.

        Raises:
            OverBudget: If any size or count limit is exceeded.
            ForbiddenContent: If the payload carries forbidden content.
        """
        self.check_task(task)
        text = self.render(task)
        metrics = self.verifier.verify(text, task.id)
        return CompressedContext(
            task_id=task.id,
            text=text,
            metrics=metrics,
            fingerprint=structural_fingerprint(text),
        )

    def build_or_compress(self, task: Task) -> CompressedContext:
        """Build the payload, compressing the task once if the first build fails."""
        try:
            return self.build(task)
        except ContextError as exc:
            logger.warning("Task {} context rejected ({}); compressing", task.id, exc)
        compressed, steps = compress(task, self)
        result = self.build(compressed)
        result.compressed = True
        result.steps = steps
        logger.info("Task {} context compressed to {} bytes via {}", task.id, result.size, ", ".join(steps))
        return result

    def fits(self, task: Task) -> bool:
        try:
            self.build(task)
        except ContextError:
            return False
        return True


def _with_context(task: Task, **changes: Any) -> Task:
    updated = task.clone()
    updated.context = replace(task.context, **changes)
    return updated


def compress(task: Task, builder: Optional[ContextBuilder] = None) -> tuple[Task, list[str]]:
    """Shrink `task` until its rendered context is valid.

    Order: normalize verbose fields and strip offending optional items,
    then shorten the description, then drop gotchas, patterns and finally
    constraints. Acceptance criteria are never modified. A task that
    already builds is returned unchanged.

    Returns:
        The compressed copy and the names of the steps applied.

    Raises:
        OverBudget: If the task cannot fit even with every optional field dropped.
        ForbiddenContent: If required fields (title, description, acceptance)
            carry forbidden content.
    """
    builder = builder or ContextBuilder()
    if builder.fits(task):
        return task, []

    limits = builder.limits
    verifier = builder.verifier
    steps: list[str] = []
    current = task.clone()

    def _clean(items: list[str], max_count: int, max_chars: Optional[int]) -> list[str]:
        kept: list[str] = []
        for item in items:
            text = " ".join(item.split())
            if max_chars is not None:
                text = _truncate(text, max_chars - 1)
            if verifier.find_planning_keywords(text):
                continue
            if any(tid != task.id for tid in verifier.extract_task_ids(text)):
                continue
            kept.append(text)
        return kept[:max_count]

    # 1. normalize verbose fields
    title = _truncate(current.title, MAX_TITLE_CHARS)
    description = _truncate(current.description.strip(), MAX_DESCRIPTION_CHARS)
    normalized = current.clone()
    normalized.title = title
    normalized.description = description
    normalized.context = TaskContext(
        constraints=_clean(current.context.constraints, limits.max_constraints, limits.max_statement_chars),
        patterns=[
            " ".join(p.split())
            for p in current.context.patterns
            if parse_pattern_ref(p) is not None and len(" ".join(p.split())) <= MAX_PATTERN_CHARS
        ][:MAX_PATTERNS],
        gotchas=_clean(current.context.gotchas, limits.max_gotchas, limits.max_statement_chars),
        extra=dict(current.context.extra),
    )
    if normalized != current:
        steps.append("normalize")
    current = normalized
    if builder.fits(current):
        return current, steps

    # 2. shorten the description toward the floor, keeping whatever fits
    overflow = _byte_size(builder.render(current)) - limits.max_context_bytes + 1
    if overflow > 0 and len(current.description) > MIN_DESCRIPTION_CHARS:
        target = max(MIN_DESCRIPTION_CHARS, len(current.description) - overflow - 3)
        shortened = current.clone()
        shortened.description = _truncate(current.description, target)
        while _byte_size(builder.render(shortened)) >= limits.max_context_bytes and len(
            shortened.description
        ) > MIN_DESCRIPTION_CHARS:
            target = max(MIN_DESCRIPTION_CHARS, target - 40)
            shortened.description = _truncate(current.description, target)
        current = shortened
        steps.append("truncate_description")
        if builder.fits(current):
            return current, steps

    # 3. drop optional fields, lowest priority first
    for name in ("gotchas", "patterns", "constraints"):
        items = getattr(current.context, name)
        if not items:
            continue
        current = _with_context(current, **{name: []})
        steps.append(f"drop_{name}")
        if builder.fits(current):
            return current, steps

    # Nothing optional left; surface the real violation.
    builder.build(current)
    return current, steps

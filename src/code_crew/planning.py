"""Fan out the planning stage and turn its plan into a backlog.

`PlanningCoordinator` runs the spec, arch and qa sessions concurrently,
merges their documents structurally into `PLAN.md`, then deletes every
session and verifies each one is gone. `BacklogGenerator` asks a single
session for a YAML backlog and validates it with the backlog rules.
"""

from __future__ import annotations

import concurrent.futures
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from loguru import logger

from .agents import AgentBackend
from .backlog import BacklogManager, parse_backlog
from .config import PlanningConfig
from .constants import BACKLOG_FILE, PLANNING_ROLES
from .context import ContextVerifier
from .errors import CrewError, ForbiddenContent, ParseError, SessionLeakError
from .io_utils import _atomic_write_text
from .models import Backlog
from .plan_merge import structured_merge
from .prompts import _build_backlog_prompt, _build_planning_prompt
from .shutdown import ShutdownManager
from .utils import _now_iso

_YAML_FENCE_RE = re.compile(r"```(?:ya?ml)?[ \t]*\n(.+?)\n```", re.S)

ROLE_FILES = {"spec": "SPEC.md", "arch": "ARCH.md", "qa": "QA.md"}


@dataclass
class UnifiedPlan:
    plan_path: Path
    documents: dict[str, Path]
    text: str
    duration_seconds: float
    session_ids: list[str] = field(default_factory=list)


class _SessionTracker:
    """Remember live sessions so they can be deleted and verified on any exit path."""

    def __init__(self, backend: AgentBackend, verifier: ContextVerifier) -> None:
        self.backend = backend
        self.verifier = verifier
        self._lock = threading.Lock()
        self._live: list[str] = []
        self.created: list[str] = []

    def create(self, title: str) -> str:
        session_id = self.backend.create_session(title)
        with self._lock:
            self._live.append(session_id)
            self.created.append(session_id)
        return session_id

    def cleanup(self) -> list[SessionLeakError]:
        """Delete every live session and verify it is gone."""
        with self._lock:
            pending = list(self._live)
        leaks: list[SessionLeakError] = []
        for session_id in pending:
            try:
                self.backend.delete_session(session_id)
                self.verifier.verify_deleted(self.backend, session_id)
            except SessionLeakError as exc:
                leaks.append(exc)
                continue
            except CrewError as exc:
                leaks.append(SessionLeakError(session_id, str(exc)))
                continue
            with self._lock:
                self._live.remove(session_id)
        return leaks


def _finish(tracker: _SessionTracker, error: Optional[BaseException]) -> None:
    leaks = tracker.cleanup()
    for leak in leaks:
        logger.error("{}", leak)
    if leaks and error is None:
        raise leaks[0]


def extract_yaml_block(text: str) -> str:
    match = _YAML_FENCE_RE.search(text or "")
    if not match:
        raise ParseError("Failed to extract a ```yaml block from the backlog response")
    return match.group(1)


class PlanningCoordinator:
    def __init__(
        self,
        backend: AgentBackend,
        output_dir: Path,
        *,
        config: Optional[PlanningConfig] = None,
        verifier: Optional[ContextVerifier] = None,
        shutdown: Optional[ShutdownManager] = None,
        cwd: Optional[Path] = None,
    ) -> None:
        self.backend = backend
        self.output_dir = output_dir
        self.config = config or PlanningConfig()
        self.verifier = verifier or ContextVerifier()
        self.shutdown = shutdown
        self.cwd = cwd

    def _check_payload(self, role: str, prompt: str) -> None:
        metrics = self.verifier.analyze(prompt)
        if metrics.has_full_files:
            raise ForbiddenContent(
                f"Planning context for {role} contains full file contents; reference paths and line ranges instead"
            )

    def _run_role(self, tracker: _SessionTracker, role: str, context_doc: str) -> str:
        prompt = _build_planning_prompt(role, context_doc)
        self._check_payload(role, prompt)
        session_id = tracker.create(f"Planning: {role.upper()}")
        logger.info("Planning session {} started ({})", session_id, role)
        result = self.backend.submit(
            session_id,
            prompt,
            deadline_seconds=self.config.timeout_seconds,
            cwd=self.cwd,
            model=self.config.model,
        )
        return result.output

    def plan_in_parallel(self, context_doc: str) -> UnifiedPlan:
        """Run the planning sessions and write SPEC.md, ARCH.md, QA.md and PLAN.md.

        Raises:
            SessionLeakError: If any session deletion cannot be verified.
            ExecutionTimeout, CollaboratorError: If a planning session fails.
        """
        start = time.monotonic()
        tracker = _SessionTracker(self.backend, self.verifier)
        if self.shutdown is not None:
            self.shutdown.register("planning-sessions", tracker.cleanup)
        error: Optional[BaseException] = None
        try:
            outputs: dict[str, str] = {}
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=self.config.sessions,
                thread_name_prefix="crew-plan",
            ) as executor:
                futures = {
                    executor.submit(self._run_role, tracker, role, context_doc): role for role in PLANNING_ROLES
                }
                for future in concurrent.futures.as_completed(futures):
                    outputs[futures[future]] = future.result()

            self.output_dir.mkdir(parents=True, exist_ok=True)
            documents: dict[str, Path] = {}
            for role in PLANNING_ROLES:
                path = self.output_dir / ROLE_FILES[role]
                _atomic_write_text(path, outputs[role])
                documents[role] = path
            text = structured_merge(outputs["spec"], outputs["arch"], outputs["qa"])
            plan_path = self.output_dir / "PLAN.md"
            _atomic_write_text(plan_path, text)
        except BaseException as exc:
            error = exc
            logger.error("Planning failed: {}", exc)
            raise
        finally:
            if self.shutdown is not None:
                self.shutdown.unregister("planning-sessions")
            _finish(tracker, error)

        duration = time.monotonic() - start
        logger.info("Planning complete in {:.1f}s; {} session(s) deleted and verified", duration, len(tracker.created))
        return UnifiedPlan(
            plan_path=plan_path,
            documents=documents,
            text=text,
            duration_seconds=duration,
            session_ids=list(tracker.created),
        )


class BacklogGenerator:
    def __init__(
        self,
        backend: AgentBackend,
        *,
        config: Optional[PlanningConfig] = None,
        verifier: Optional[ContextVerifier] = None,
        cwd: Optional[Path] = None,
    ) -> None:
        self.backend = backend
        self.config = config or PlanningConfig()
        self.verifier = verifier or ContextVerifier()
        self.cwd = cwd

    def generate(self, plan_text: str, track_id: str, output_path: Optional[Path] = None) -> Backlog:
        """Ask a session for a backlog, validate it and write it to `output_path`.

        Raises:
            ParseError, CycleError: If the generated backlog is invalid.
            SessionLeakError: If the session deletion cannot be verified.
        """
        tracker = _SessionTracker(self.backend, self.verifier)
        error: Optional[BaseException] = None
        try:
            session_id = tracker.create(f"Backlog Generation - {track_id}")
            result = self.backend.submit(
                session_id,
                _build_backlog_prompt(plan_text, track_id, _now_iso()),
                deadline_seconds=self.config.timeout_seconds,
                cwd=self.cwd,
                model=self.config.model,
            )
            try:
                data = yaml.safe_load(extract_yaml_block(result.output))
            except yaml.YAMLError as exc:
                raise ParseError(f"Generated backlog is not valid YAML: {exc}") from exc
            if isinstance(data, dict):
                data.setdefault("track_id", track_id)
            backlog = parse_backlog(data, source="generated backlog", require_acceptance=True)
            if output_path is not None:
                manager = BacklogManager(output_path)
                manager.attach(backlog)
                manager.save()
                logger.info("Backlog generated: {} task(s) written to {}", len(backlog.tasks), output_path)
        except BaseException as exc:
            error = exc
            raise
        finally:
            _finish(tracker, error)
        return backlog


def default_backlog_path(output_dir: Path) -> Path:
    return output_dir / BACKLOG_FILE

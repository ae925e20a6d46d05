"""Detect context drift in running worker sessions.

The detector only observes. It returns a `DriftReport` for the pool to log,
and never mutates task or session state.
"""

from __future__ import annotations

import threading
from typing import Optional

from loguru import logger

from .context import ContextVerifier
from .models import ContextFingerprint, DriftReport, DriftSnapshot, WorkerSession


class DriftDetector:
    def __init__(self, verifier: Optional[ContextVerifier] = None, *, max_growth: Optional[float] = None) -> None:
        self.verifier = verifier or ContextVerifier()
        self.max_growth = max_growth if max_growth is not None else self.verifier.limits.max_drift_growth
        self._lock = threading.Lock()
        self._baselines: dict[str, ContextFingerprint] = {}
        self._last: dict[str, DriftSnapshot] = {}

    def record_baseline(self, session: WorkerSession) -> None:
        with self._lock:
            self._baselines[session.task_id] = session.baseline

    def snapshot(self, session: WorkerSession, context_text: str) -> DriftSnapshot:
        metrics = self.verifier.analyze(context_text)
        snap = DriftSnapshot(
            task_id=session.task_id,
            size=metrics.size,
            task_ids=list(metrics.task_ids),
            planning_markers=list(metrics.planning_keywords),
            has_full_files=metrics.has_full_files,
        )
        with self._lock:
            self._last[session.task_id] = snap
        return snap

    def check(self, session: WorkerSession, context_text: str) -> DriftReport:
        """Compare the session's current context against its baseline."""
        snap = self.snapshot(session, context_text)
        baseline = session.baseline
        reasons: list[str] = []
        growth = 0.0
        if baseline.size > 0:
            growth = (snap.size - baseline.size) / baseline.size
            if growth > self.max_growth:
                reasons.append(
                    f"context grew {growth * 100:.1f}% ({baseline.size} -> {snap.size} bytes, "
                    f"limit {self.max_growth * 100:.0f}%)"
                )
        if len(snap.task_ids) > 1:
            reasons.append(f"{len(snap.task_ids)} task ids referenced: {', '.join(snap.task_ids)}")
        elif snap.task_ids and snap.task_ids[0] != session.task_id:
            reasons.append(f"foreign task id referenced: {snap.task_ids[0]}")
        if snap.planning_markers:
            reasons.append(f"planning vocabulary: {', '.join(snap.planning_markers[:3])}")
        if snap.has_full_files:
            reasons.append("full file contents in context")

        report = DriftReport(task_id=session.task_id, snapshot=snap, reasons=reasons, growth=growth)
        if report.ok:
            logger.debug("Drift check passed for {} ({} bytes)", session.task_id, snap.size)
        return report

    def report(self) -> str:
        """Render recorded baselines and the latest snapshot per task."""
        lines = ["=== Context Drift Report ===", ""]
        with self._lock:
            for task_id, baseline in sorted(self._baselines.items()):
                lines.append(f"{task_id}:")
                lines.append(f"  Baseline: {baseline.size} bytes (digest {baseline.digest})")
                last = self._last.get(task_id)
                if last is not None:
                    lines.append(f"  Latest: {last.size} bytes at {last.captured_at}")
                    lines.append(f"  Task ids: {len(last.task_ids)}")
                lines.append("")
        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._baselines.clear()
            self._last.clear()

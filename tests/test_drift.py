from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from code_crew.context import structural_fingerprint
from code_crew.drift import DriftDetector
from code_crew.models import WorkerSession

BASELINE = "# Task T01: Add login\n\nExpose POST /login.\n\n## Acceptance Criteria\n- Returns 200\n"


def _session(text: str = BASELINE) -> WorkerSession:
    return WorkerSession(
        task_id="T01",
        session_id="ses-1",
        workspace_path="/tmp/ws",
        started_at="2026-01-01T00:00:00+00:00",
        deadline=0.0,
        baseline=structural_fingerprint(text),
    )


def test_unchanged_context_passes():
    detector = DriftDetector()
    session = _session()
    detector.record_baseline(session)
    report = detector.check(session, BASELINE)
    assert report.ok
    assert report.growth == 0.0


def test_growth_over_limit_is_reported():
    detector = DriftDetector(max_growth=0.5)
    session = _session()
    report = detector.check(session, BASELINE + "More notes about the endpoint. " * 10)
    assert not report.ok
    assert report.growth > 0.5
    assert report.reasons[0].startswith("context grew")


def test_foreign_task_ids_and_planning_markers_are_reported():
    detector = DriftDetector()
    session = _session()
    report = detector.check(session, BASELINE + "Also finish T02 while here. MAYBE: reuse it.\n")
    assert "2 task ids referenced: T01, T02" in report.reasons
    assert any(reason.startswith("planning vocabulary") for reason in report.reasons)
    assert report.snapshot.task_ids == ["T01", "T02"]


def test_single_foreign_task_id():
    detector = DriftDetector(max_growth=10)
    session = _session()
    report = detector.check(session, "# Task T07\n")
    assert report.reasons == ["foreign task id referenced: T07"]


def test_check_never_mutates_session():
    detector = DriftDetector()
    session = _session()
    before = (session.task_id, session.session_id, session.baseline)
    detector.check(session, BASELINE * 5)
    assert (session.task_id, session.session_id, session.baseline) == before


def test_report_lists_baselines_and_latest_snapshot():
    detector = DriftDetector()
    session = _session()
    detector.record_baseline(session)
    detector.check(session, BASELINE)

    text = detector.report()
    assert text.startswith("=== Context Drift Report ===")
    assert f"Baseline: {session.baseline.size} bytes" in text
    assert "Task ids: 1" in text

    detector.reset()
    assert "T01:" not in detector.report()

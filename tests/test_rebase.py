"""Tests for the rebase policy, spec synthesis and spec history."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from code_crew.backlog import BacklogManager, parse_backlog
from code_crew.config import RebaseConfig
from code_crew.models import AttemptRecord, CheckResult, RebaseAction, TaskStatus, VerificationResult
from code_crew.rebase import RebaseEngine, files_outside_scope
from code_crew.spec_history import SpecRepository


def _manager(status: str = "failed", attempts: int = 1, **extra) -> BacklogManager:
    task = {
        "id": "T01",
        "title": "Add cache layer",
        "description": "Cache user lookups in memory.",
        "status": status,
        "attempts": attempts,
        "acceptance": ["Repeated lookups hit the cache"],
        "scope": {"files_hint": ["src/cache.py", "tests/"]},
    }
    task.update(extra)
    manager = BacklogManager()
    manager.attach(parse_backlog({"track_id": "demo", "tasks": [task]}))
    return manager


def _gate_failure(attempt: int = 1, output: str = "E   assert cache.hits == 1", files=None) -> VerificationResult:
    return VerificationResult(
        task_id="T01",
        attempt=attempt,
        checks=[CheckResult(name="tests", command="pytest", passed=False, exit_code=1, output_tail=output)],
        files_touched=list(files or ["src/cache.py"]),
    )


def _infra_failure(attempt: int = 1) -> VerificationResult:
    return VerificationResult(task_id="T01", attempt=attempt, error="agent timed out", error_type="timeout")


def test_first_infrastructure_failure_retries_as_is():
    engine = RebaseEngine()
    task = _manager(attempts=1).get_task("T01")
    decision = engine.evaluate(task, _infra_failure())
    assert decision.action == RebaseAction.RETRY_AS_IS
    assert decision.triggered() == []


def test_second_attempt_triggers_rebase():
    engine = RebaseEngine()
    task = _manager(attempts=2).get_task("T01")
    decision = engine.evaluate(task, _infra_failure(attempt=2))
    assert decision.action == RebaseAction.REBASE
    assert "high_attempts" in decision.triggered()


def test_gate_evidence_rebases_on_first_attempt():
    engine = RebaseEngine()
    task = _manager(attempts=1).get_task("T01")
    decision = engine.evaluate(task, _gate_failure())
    assert decision.action == RebaseAction.REBASE


def test_attempt_ceiling_abandons():
    engine = RebaseEngine(RebaseConfig(max_attempts=5))
    task = _manager(attempts=5).get_task("T01")
    assert engine.evaluate(task, _gate_failure(attempt=5)).action == RebaseAction.ABANDON


def test_scope_escape_and_repeated_failure_indicators():
    engine = RebaseEngine()
    task = _manager(attempts=1).get_task("T01")
    escaped = engine.indicators(task, _gate_failure(files=["src/other.py"]))
    assert escaped["scope_escape"]

    history = [AttemptRecord(task_id="T01", attempt=1, status="failed", started_at="", verification=_gate_failure(1))]
    repeated = engine.indicators(task, _gate_failure(attempt=2), history)
    assert repeated["repeated_failure"]
    assert repeated["error_patterns"] is False


def test_soft_indicators_need_company():
    engine = RebaseEngine(RebaseConfig(max_context_bytes=100, max_duration_seconds=10))
    task = _manager(attempts=1).get_task("T01")
    one = engine.evaluate(task, _infra_failure(), context_size=500)
    assert one.action == RebaseAction.RETRY_AS_IS
    two = engine.evaluate(task, _infra_failure(), context_size=500, duration_seconds=60)
    assert two.action == RebaseAction.REBASE


def test_files_outside_scope():
    hints = ["src/cache.py", "tests/", "docs/*.md"]
    assert files_outside_scope(["src/cache.py", "tests/test_cache.py", "docs/guide.md"], hints) == []
    assert files_outside_scope(["src/db.py"], hints) == ["src/db.py"]
    assert files_outside_scope(["anything.py"], []) == []


def test_rebase_persists_versions_and_readies_task(tmp_path: Path):
    manager = _manager(attempts=2)
    specs = SpecRepository(tmp_path / "specs")
    engine = RebaseEngine(backlog=manager, specs=specs)
    task = manager.get_task("T01")
    result = _gate_failure(attempt=2, files=["src/db.py"])
    decision = engine.evaluate(task, result)

    updated = engine.apply(task, decision, result)

    assert updated.status == TaskStatus.READY
    assert updated.attempts == 2
    assert updated.spec_version == 2
    assert updated.acceptance == task.acceptance
    assert "Previous failure (attempt 2): tests failed" in updated.description
    assert updated.context.constraints[0].startswith("Only modify: src/cache.py")
    assert updated.context.gotchas[-1].startswith("Avoid editing src/db.py because")
    assert specs.versions("T01") == [1, 2]
    assert specs.load("T01", 1).content["description"] == "Cache user lookups in memory."
    assert specs.compare("T01", 1, 2)["changed_fields"] == ["context", "description", "failure_evidence"]


def test_repeated_rebase_replaces_previous_evidence():
    manager = _manager(attempts=2)
    engine = RebaseEngine(backlog=manager)
    task = manager.get_task("T01")
    engine.apply(task, engine.evaluate(task, _gate_failure(attempt=2)), _gate_failure(attempt=2))

    manager.transition("T01", TaskStatus.READY, TaskStatus.IN_PROGRESS)
    manager.record_attempt("T01")
    manager.transition("T01", TaskStatus.IN_PROGRESS, TaskStatus.FAILED)
    again = manager.get_task("T01")
    revised = engine.synthesize(again, engine.evaluate(again, _gate_failure(attempt=3)), _gate_failure(attempt=3))

    assert revised.description.count("Previous failure") == 1
    assert "(attempt 3)" in revised.description


def test_rebase_refuses_unchanged_spec():
    manager = _manager(attempts=2)
    engine = RebaseEngine(backlog=manager)
    task = manager.get_task("T01")
    decision = engine.evaluate(task, _gate_failure(attempt=2))
    decision.revised = task.clone()
    with pytest.raises(ValueError, match="unchanged"):
        engine.rebase(task, decision, _gate_failure(attempt=2))
    assert manager.get_task("T01").status == TaskStatus.FAILED


def test_abandon_is_terminal():
    manager = _manager(attempts=5)
    engine = RebaseEngine(backlog=manager)
    task = manager.get_task("T01")
    updated = engine.apply(task, engine.evaluate(task, _gate_failure(attempt=5)), _gate_failure(attempt=5))
    assert updated.status == TaskStatus.ABANDONED


def test_analyze_batch_recommends_rebases():
    manager = _manager(attempts=2)
    tasks = {task.id: task for task in manager.all_tasks()}
    records = [
        AttemptRecord(task_id="T01", attempt=1, status="failed", started_at="", verification=_infra_failure(1)),
        AttemptRecord(task_id="T01", attempt=2, status="failed", started_at="", verification=_infra_failure(2)),
        AttemptRecord(task_id="T01", attempt=3, status="completed", started_at=""),
    ]
    analysis = RebaseEngine().analyze_batch(records, tasks)
    assert analysis["total_attempts"] == 3
    assert analysis["failed_attempts"] == 2
    assert analysis["needs_rebase"] == 1
    assert analysis["recommendations"][0]["task_id"] == "T01"


def test_spec_history_versions_must_increase(tmp_path: Path):
    specs = SpecRepository(tmp_path / "specs")
    assert specs.latest("T01") is None
    assert specs.save("T01", {"description": "one"}, "original") == 1
    assert specs.save("T01", {"description": "one, longer"}, "rebase") == 2
    with pytest.raises(ValueError):
        specs.save("T01", {"description": "stale"}, "late", version=2)
    assert specs.latest("T01").reason == "rebase"
    assert [item.version for item in specs.history("T01")] == [1, 2]
    comparison = specs.compare("T01", 1, 2)
    assert comparison["size_diff"] == len("one, longer") - len("one")
    assert comparison["changed_fields"] == ["description"]

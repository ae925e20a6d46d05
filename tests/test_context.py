"""Tests for worker context rendering, verification and compression."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from code_crew.config import LimitsConfig
from code_crew.context import ContextBuilder, ContextVerifier, compress, parse_pattern_ref
from code_crew.errors import ForbiddenContent, OverBudget, SessionLeakError
from code_crew.models import Task, TaskContext, TaskScope


def _task(**overrides) -> Task:
    task = Task(
        id="T01",
        title="Add login endpoint",
        description="Expose POST /login that returns a session token.",
        acceptance=["POST /login returns 200 for valid credentials", "Invalid credentials return 401"],
        scope=TaskScope(files_hint=["src/api/auth.py"]),
    )
    for key, value in overrides.items():
        setattr(task, key, value)
    return task


def _builder(**limits) -> ContextBuilder:
    return ContextBuilder(ContextVerifier(LimitsConfig(**limits)))


def test_build_renders_single_task_payload():
    result = _builder().build(_task())
    assert result.text.startswith("# Task T01: Add login endpoint")
    assert "## Acceptance Criteria" in result.text
    assert "## Instructions" in result.text
    assert result.size < 3000
    assert result.metrics.task_ids == ["T01"]
    assert result.fingerprint.size == result.size


def test_six_constraints_are_rejected_then_compressed():
    constraints = [f"Constraint number {idx} keeps things simple" for idx in range(6)]
    task = _task(context=TaskContext(constraints=constraints))
    builder = _builder()

    with pytest.raises(OverBudget, match="6 constraints"):
        builder.build(task)

    result = builder.build_or_compress(task)
    assert result.compressed
    assert result.text.count("Constraint number") == 5

    compressed, steps = compress(task, builder)
    assert len(compressed.context.constraints) == 5
    assert steps == ["normalize"]
    assert compressed.acceptance == task.acceptance


def test_statements_must_be_shorter_than_limit():
    task = _task(context=TaskContext(gotchas=["x" * 100]))
    with pytest.raises(OverBudget, match="gotcha of 100 chars"):
        _builder().build(task)
    compressed, _ = compress(task, _builder())
    assert len(compressed.context.gotchas[0]) == 99


def test_byte_ceiling_is_enforced_after_compression():
    task = _task(description="Implement the handler carefully. " * 200)
    builder = _builder()
    with pytest.raises(OverBudget, match="too large"):
        builder.build(task)

    result = builder.build_or_compress(task)
    assert result.size < 3000
    assert result.text.count("POST /login returns 200") == 1


def test_description_is_truncated_before_optional_fields_are_dropped():
    task = _task(
        description="Explain the behaviour in detail. " * 18,
        context=TaskContext(gotchas=["Tokens expire after one hour"]),
    )
    builder = _builder(max_context_bytes=900)
    compressed, steps = compress(task, builder)
    assert "truncate_description" in steps
    assert "drop_gotchas" not in steps
    assert compressed.context.gotchas == ["Tokens expire after one hour"]
    assert builder.fits(compressed)


def test_optional_fields_drop_in_priority_order():
    task = _task(
        description="Short description of the login endpoint work.",
        context=TaskContext(
            constraints=[f"Constraint {idx}: keep the public interface exactly as it is now" for idx in range(5)],
            gotchas=[f"Gotcha {idx}: the session store is shared across worker threads" for idx in range(3)],
        ),
    )
    builder = _builder(max_context_bytes=650)
    compressed, steps = compress(task, builder)
    assert steps == ["drop_gotchas", "drop_constraints"]
    assert compressed.context.gotchas == []
    assert compressed.context.constraints == []
    assert compressed.acceptance == task.acceptance


def test_compression_is_idempotent():
    task = _task(
        description="Lots of words here. " * 100,
        context=TaskContext(constraints=[f"Rule {idx}" for idx in range(8)], gotchas=["g" * 150]),
    )
    builder = _builder()
    once, steps = compress(task, builder)
    assert steps
    twice, more_steps = compress(once, builder)
    assert more_steps == []
    assert twice == once


def test_compress_cannot_fix_forbidden_required_fields():
    task = _task(description="We explored three options before settling on this.")
    with pytest.raises(ForbiddenContent, match="planning vocabulary"):
        compress(task, _builder())


def test_pattern_references_must_not_carry_code():
    task = _task(context=TaskContext(patterns=["def login(user):\n    return token"]))
    with pytest.raises(ForbiddenContent, match="pattern"):
        _builder().build(task)

    compressed, _ = compress(task, _builder())
    assert compressed.context.patterns == []


def test_parse_pattern_ref():
    assert parse_pattern_ref("src/api/users.py:10-40 - existing handler") == {
        "path": "src/api/users.py",
        "start": 10,
        "end": 40,
        "description": "existing handler",
    }
    assert parse_pattern_ref("src/api/users.py:40-10 reversed") is None
    assert parse_pattern_ref("just prose") is None


# -- verifier -------------------------------------------------------------------


def test_verify_rejects_foreign_task_ids():
    verifier = ContextVerifier()
    with pytest.raises(ForbiddenContent, match="foreign task ids: T02"):
        verifier.verify("# Task T01\nThis builds on T02.\n", "T01")


def test_verify_rejects_oversized_payload():
    verifier = ContextVerifier(LimitsConfig(max_context_bytes=500))
    with pytest.raises(OverBudget):
        verifier.verify("# Task T01\n" + "a" * 600, "T01")


def test_payload_must_stay_strictly_below_the_ceiling():
    verifier = ContextVerifier(LimitsConfig(max_context_bytes=500))
    with pytest.raises(OverBudget, match="500 bytes"):
        verifier.verify("# Task T01\n" + "a" * 489, "T01")
    assert verifier.verify("# Task T01\n" + "a" * 488, "T01").size == 499


def test_verify_rejects_full_file_dumps():
    body = "\n".join(f"line_{idx} = {idx}" for idx in range(60))
    verifier = ContextVerifier()
    with pytest.raises(ForbiddenContent, match="full file"):
        verifier.verify(f"# Task T01\n```python\n{body}\n```\n", "T01")
    assert verifier.detect_full_files(f"# File: src/app.py\n{body}\n")
    assert not verifier.detect_full_files("```python\nx = 1\n```\n")


def test_known_ids_only_match_identifier_shaped_names():
    verifier = ContextVerifier(known_task_ids=["auth-1", "A"], task_id_pattern=r"\bZZZ\b")
    assert verifier.extract_task_ids("A change that depends on auth-1 but not auth-10") == ["auth-1"]


def test_planning_keywords_are_case_insensitive():
    verifier = ContextVerifier()
    assert verifier.find_planning_keywords("After Much Discussion we agreed") == ["after much discussion"]


class _Sessions:
    def __init__(self, lingering_checks: int) -> None:
        self.lingering_checks = lingering_checks
        self.checks = 0

    def session_exists(self, session_id: str) -> bool:
        self.checks += 1
        return self.checks <= self.lingering_checks


def test_verify_deleted_retries_until_gone():
    backend = _Sessions(lingering_checks=2)
    ContextVerifier().verify_deleted(backend, "ses-1", attempts=3, sleep=lambda _: None)
    assert backend.checks == 3


def test_verify_deleted_raises_on_leak():
    backend = _Sessions(lingering_checks=10)
    with pytest.raises(SessionLeakError, match="ses-1"):
        ContextVerifier().verify_deleted(backend, "ses-1", attempts=3, sleep=lambda _: None)
    assert backend.checks == 3

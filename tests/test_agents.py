from __future__ import annotations

import shutil
import sys
import threading
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from code_crew.agents import CommandAgentBackend, is_transient_output
from code_crew.context import structural_fingerprint
from code_crew.drift import DriftDetector
from code_crew.errors import CollaboratorError, ExecutionTimeout
from code_crew.models import WorkerSession

pytestmark = pytest.mark.skipif(shutil.which("sh") is None, reason="requires a POSIX shell")


def test_submit_with_prompt_file(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "cat {prompt_file}")
    session_id = backend.create_session("Task T01")

    result = backend.submit(session_id, "# Task T01\nDo the thing.\n", deadline_seconds=10, cwd=tmp_path)

    assert result.output == "# Task T01\nDo the thing.\n"
    assert result.exit_code == 0
    assert backend.transcript(session_id) == "# Task T01\nDo the thing.\n\n\n# Task T01\nDo the thing.\n"
    assert backend.outputs(session_id) == [result.output]


def test_submit_via_stdin_and_transcript_grows(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "cat -")
    session_id = backend.create_session("Task T01")

    backend.submit(session_id, "first", deadline_seconds=10)
    second = backend.submit(session_id, "second", deadline_seconds=10)

    assert second.output == "second"
    assert backend.transcript(session_id) == "first\n\nfirst\n\nsecond\n\nsecond"


def test_resubmitting_the_same_payload_reuses_the_turn(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "sh -c 'echo busy' {prompt_file}")
    session_id = backend.create_session("Task T01")

    backend.submit(session_id, "# Task T01\nDo it.", deadline_seconds=10)
    backend.submit(session_id, "# Task T01\nDo it.", deadline_seconds=10)

    assert [path.name for path in sorted((tmp_path / "sessions" / session_id).glob("prompt_*.txt"))] == [
        "prompt_001.txt"
    ]
    assert backend.transcript(session_id) == "# Task T01\nDo it.\n\nbusy\n"


def test_drift_sees_agent_output(tmp_path: Path):
    backend = CommandAgentBackend(
        tmp_path / "sessions", "sh -c 'echo See T02. We explored three options' {prompt_file}"
    )
    session_id = backend.create_session("Task T01")
    payload = "# Task T01: Token store\nKeep issued tokens in memory.\n"
    session = WorkerSession(
        task_id="T01",
        session_id=session_id,
        workspace_path=str(tmp_path),
        started_at="2026-01-01T00:00:00+00:00",
        deadline=0.0,
        baseline=structural_fingerprint(payload),
    )

    backend.submit(session_id, payload, deadline_seconds=10)
    report = DriftDetector().check(session, backend.transcript(session_id))

    assert not report.ok
    assert any("T02" in reason for reason in report.reasons)
    assert any(reason.startswith("planning vocabulary") for reason in report.reasons)


def test_workspace_placeholder_runs_in_cwd(tmp_path: Path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    backend = CommandAgentBackend(tmp_path / "sessions", "sh -c 'pwd' {prompt_file}")
    session_id = backend.create_session("Task T01")

    result = backend.submit(session_id, "x", deadline_seconds=10, cwd=workspace)

    assert Path(result.output.strip()).resolve() == workspace.resolve()


def test_non_zero_exit_raises_collaborator_error(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "sh -c 'echo boom; exit 3' {prompt_file}")
    session_id = backend.create_session("Task T01")

    with pytest.raises(CollaboratorError, match="code 3: boom") as excinfo:
        backend.submit(session_id, "x", deadline_seconds=10)
    assert excinfo.value.transient is False


def test_transient_output_is_flagged(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "sh -c 'echo 429 Too Many Requests; exit 1' {prompt_file}")
    session_id = backend.create_session("Task T01")

    with pytest.raises(CollaboratorError) as excinfo:
        backend.submit(session_id, "x", deadline_seconds=10)
    assert excinfo.value.transient is True
    assert is_transient_output("Connection reset by peer")
    assert not is_transient_output("SyntaxError: invalid syntax")


def test_deadline_kills_the_agent(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "sh -c 'exec sleep 10' {prompt_file}")
    session_id = backend.create_session("Task T01")

    start = time.monotonic()
    with pytest.raises(ExecutionTimeout, match="deadline"):
        backend.submit(session_id, "x", deadline_seconds=0.5)
    assert time.monotonic() - start < 5


def test_cancel_interrupts_running_submission(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "sh -c 'exec sleep 10' {prompt_file}")
    session_id = backend.create_session("Task T01")
    errors: list[BaseException] = []

    def _submit() -> None:
        try:
            backend.submit(session_id, "x", deadline_seconds=30)
        except ExecutionTimeout as exc:
            errors.append(exc)

    thread = threading.Thread(target=_submit)
    thread.start()
    for _ in range(100):
        if backend._processes:
            break
        time.sleep(0.05)
    backend.cancel(session_id)
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert errors and "cancelled" in str(errors[0])


def test_missing_binary_raises_collaborator_error(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "definitely-not-an-agent-binary {prompt_file}")
    session_id = backend.create_session("Task T01")

    with pytest.raises(CollaboratorError, match="could not start"):
        backend.submit(session_id, "x", deadline_seconds=10)


def test_command_must_accept_a_prompt(tmp_path: Path):
    with pytest.raises(ValueError, match="prompt_file"):
        CommandAgentBackend(tmp_path / "sessions", "codex exec")
    with pytest.raises(ValueError, match="empty"):
        CommandAgentBackend(tmp_path / "sessions", "   ")


def test_delete_session_removes_state(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "cat {prompt_file}")
    session_id = backend.create_session("Task T01")
    assert backend.session_exists(session_id)

    backend.delete_session(session_id)

    assert not backend.session_exists(session_id)
    assert backend.transcript(session_id) == ""
    with pytest.raises(CollaboratorError, match="Unknown session"):
        backend.submit(session_id, "x", deadline_seconds=10)


def test_expired_deadline_fails_fast(tmp_path: Path):
    backend = CommandAgentBackend(tmp_path / "sessions", "cat {prompt_file}")
    session_id = backend.create_session("Task T01")
    with pytest.raises(ExecutionTimeout):
        backend.submit(session_id, "x", deadline_seconds=0)

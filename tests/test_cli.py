from __future__ import annotations

import json
import shutil
import subprocess
import sys
from pathlib import Path

import pytest
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from code_crew import cli

TASKS = [
    {
        "id": "T01",
        "title": "Token store",
        "description": "Keep issued tokens in memory.",
        "acceptance": ["Tokens can be looked up"],
        "scope": {"files_hint": ["src/tokens.py"]},
    },
    {
        "id": "T02",
        "title": "Login endpoint",
        "description": "POST /login issues a token.",
        "depends_on": ["T01"],
        "acceptance": ["Valid credentials return 200"],
    },
    {
        "id": "T03",
        "title": "Logout endpoint",
        "description": "POST /logout revokes the token.",
        "depends_on": ["T01"],
        "acceptance": ["Revoked tokens are rejected"],
    },
]


def _project(tmp_path: Path, tasks=None) -> Path:
    project = tmp_path / "project"
    (project / "tasks").mkdir(parents=True)
    (project / "src").mkdir()
    (project / "src" / "app.py").write_text("VALUE = 1\n")
    (project / "tasks" / "BACKLOG.yaml").write_text(
        yaml.safe_dump({"version": "1.0", "track_id": "auth", "tasks": tasks or TASKS}, sort_keys=False)
    )
    return project


def _main(project: Path, *args: str) -> int:
    return cli.main(["--project-dir", str(project), "--log-level", "ERROR", *args])


def test_status_json(tmp_path: Path, capsys):
    project = _project(tmp_path)

    assert _main(project, "status", "--json") == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["track_id"] == "auth"
    assert payload["ready"] == ["T01"]
    assert payload["stats"]["pending"] == 3
    assert [task["id"] for task in payload["tasks"]] == ["T01", "T02", "T03"]


def test_status_reports_cycles(tmp_path: Path, capsys):
    tasks = [dict(TASKS[0], depends_on=["T02"]), TASKS[1]]
    project = _project(tmp_path, tasks)

    assert _main(project, "status") == 1
    assert "Break the cycle" in capsys.readouterr().err


def test_run_dry_run_shows_batches(tmp_path: Path, capsys):
    project = _project(tmp_path)

    assert _main(project, "run", "--dry-run") == 0

    out = capsys.readouterr().out
    assert "Batch 1" in out and "Batch 2" in out
    assert "T03: Logout endpoint" in out


def test_invalid_config_exits_2(tmp_path: Path, capsys):
    project = _project(tmp_path)
    (project / ".code_crew").mkdir()
    (project / ".code_crew" / "config.yaml").write_text("workers:\n  concurrency: 0\n")

    assert _main(project, "run", "--dry-run") == 2
    assert "workers.concurrency" in capsys.readouterr().err


def test_validate_accepts_clean_backlog(tmp_path: Path, capsys):
    project = _project(tmp_path)
    assert _main(project, "validate") == 0
    assert "ok" in capsys.readouterr().out


def test_run_drains_backlog_with_command_agent(tmp_path: Path):
    project = _project(tmp_path)

    code = _main(project, "run", "--agent-command", "cat {prompt_file}", "--no-worktrees", "--concurrency", "2")

    assert code == 0
    saved = yaml.safe_load((project / "tasks" / "BACKLOG.yaml").read_text())
    assert [task["status"] for task in saved["tasks"]] == ["completed"] * 3
    assert [task["attempts"] for task in saved["tasks"]] == [1, 1, 1]
    state = project / ".code_crew"
    assert list((state / "sessions").iterdir()) == []
    assert not (state / "workspaces" / "T01").exists()
    assert (state / "runs" / "T01" / "attempts.jsonl").exists()
    assert (state / "drift_report.txt").exists()


def test_run_halts_on_unhealthy_toolchain(tmp_path: Path, capsys):
    project = _project(tmp_path)
    (project / ".code_crew").mkdir()
    (project / ".code_crew" / "config.yaml").write_text("verify:\n  lint_command: 'exit 1'\n")

    code = _main(project, "run", "--agent-command", "cat {prompt_file}", "--no-worktrees")

    assert code == 3
    assert "lint probe failed" in capsys.readouterr().err
    saved = yaml.safe_load((project / "tasks" / "BACKLOG.yaml").read_text())
    assert all(task.get("attempts", 0) == 0 for task in saved["tasks"])


def test_spec_history_and_drift_without_state(tmp_path: Path, capsys):
    project = _project(tmp_path)
    assert _main(project, "spec-history", "T01") == 0
    assert _main(project, "drift") == 0
    out = capsys.readouterr().out
    assert "No spec history for T01" in out
    assert "No drift report yet" in out


def test_analyze_json_with_empty_audit(tmp_path: Path, capsys):
    project = _project(tmp_path)
    assert _main(project, "analyze", "--json") == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload == {"failed_attempts": 0, "needs_rebase": 0, "recommendations": [], "total_attempts": 0}


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().out


@pytest.mark.skipif(shutil.which("git") is None, reason="requires git")
def test_run_fails_tasks_when_workspace_cannot_be_created(tmp_path: Path, capsys):
    project = _project(tmp_path)
    subprocess.run(["git", "init", "-q"], cwd=project, check=True)
    (project / ".code_crew").mkdir()
    (project / ".code_crew" / "config.yaml").write_text("rebase:\n  max_attempts: 1\n")

    code = _main(project, "run", "--agent-command", "cat {prompt_file}")

    assert code == 1
    assert "Traceback" not in capsys.readouterr().err
    saved = yaml.safe_load((project / "tasks" / "BACKLOG.yaml").read_text())
    statuses = {task["id"]: task["status"] for task in saved["tasks"]}
    assert statuses == {"T01": "abandoned", "T02": "blocked", "T03": "blocked"}
    records = (project / ".code_crew" / "runs" / "T01" / "attempts.jsonl").read_text().splitlines()
    assert json.loads(records[0])["error_type"] == "workspace"


def test_plan_and_backlog_reject_invalid_agent_command(tmp_path: Path, capsys):
    project = _project(tmp_path)
    (project / "PRD.md").write_text("# Login\nUsers sign in with a password.\n")
    (project / "PLAN.md").write_text("# Plan\n")

    assert _main(project, "plan", str(project / "PRD.md"), "--agent-command", "agent --print") == 2
    assert _main(project, "backlog", str(project / "PLAN.md"), "--track-id", "auth", "--agent-command", "agent --print") == 2
    err = capsys.readouterr().err
    assert err.count("must include {prompt_file}") == 2

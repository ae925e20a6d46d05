from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from code_crew.config import VerifyConfig
from code_crew.constants import HEALTH_DIR_NAME
from code_crew.errors import UnhealthyToolchain
from code_crew.health import InstrumentationChecker


def test_unconfigured_probes_are_skipped(tmp_path: Path):
    report = InstrumentationChecker().verify_healthy(tmp_path)
    assert report.ok
    assert [probe.skipped for probe in report.probes] == [True, True, True]


def test_probes_run_against_known_good_inputs(tmp_path: Path):
    verify = VerifyConfig(
        test_command="test -f test_crew_smoke.py",
        lint_command="test -f crew_clean.py",
        typecheck_command="grep -q 'def greet' crew_typed.py",
    )
    report = InstrumentationChecker(verify, log_dir=tmp_path / "logs").check(tmp_path / "ws")

    assert report.ok, report.issues
    assert all(probe.passed and not probe.skipped for probe in report.probes)
    assert (tmp_path / "logs" / "probe_tests.log").exists()
    assert not (tmp_path / "ws" / HEALTH_DIR_NAME).exists()


def test_failing_lint_probe_marks_workspace_unhealthy(tmp_path: Path):
    verify = VerifyConfig(test_command="true", lint_command="echo 'lint is broken'; exit 1")
    checker = InstrumentationChecker(verify)

    report = checker.check(tmp_path)
    assert not report.ok
    assert report.probe("tests").passed
    assert report.probe("lint").exit_code == 1
    assert report.probe("typecheck").skipped

    with pytest.raises(UnhealthyToolchain, match="lint probe failed") as excinfo:
        checker.verify_healthy(tmp_path)
    assert len(excinfo.value.issues) == 1


def test_probe_commands_override_gate_commands(tmp_path: Path):
    verify = VerifyConfig(test_command="exit 1", probe_commands={"tests": "true"})
    checker = InstrumentationChecker(verify)
    assert checker.probe_commands() == {"tests": "true"}
    assert checker.check(tmp_path).ok

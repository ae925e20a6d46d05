"""Smoke-probe the verification tool chain before any feedback loop starts.

Each configured gate command is run against a scratch directory holding
known-good inputs. A probe that does not exit cleanly means the tool chain
would produce false negatives, so the workspace is declared unhealthy.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from .commands import run_command
from .config import VerifyConfig
from .constants import HEALTH_DIR_NAME
from .errors import UnhealthyToolchain

# Known-outcome inputs: a passing test, a lint-clean module, a type-valid module.
PROBE_FILES: dict[str, dict[str, str]] = {
    "tests": {
        "test_crew_smoke.py": "def test_smoke():\n    assert True\n",
    },
    "lint": {
        "crew_clean.py": '"""Lint probe."""\n\nVALUE = 1\n',
    },
    "typecheck": {
        "crew_typed.py": 'def greet(name: str) -> str:\n    return "hello " + name\n',
    },
}


@dataclass
class ProbeResult:
    name: str
    command: Optional[str]
    passed: bool
    exit_code: Optional[int] = None
    skipped: bool = False
    output_tail: str = ""


@dataclass
class HealthReport:
    workspace: str
    probes: list[ProbeResult] = field(default_factory=list)

    @property
    def issues(self) -> list[str]:
        return [
            f"{probe.name} probe failed (exit {probe.exit_code}): {probe.command}"
            for probe in self.probes
            if not probe.passed and not probe.skipped
        ]

    @property
    def ok(self) -> bool:
        return not self.issues

    def probe(self, name: str) -> Optional[ProbeResult]:
        for item in self.probes:
            if item.name == name:
                return item
        return None


class InstrumentationChecker:
    """Run known-outcome probes for the test runner, linter and type checker."""

    def __init__(self, verify: Optional[VerifyConfig] = None, *, log_dir: Optional[Path] = None) -> None:
        self.verify = verify or VerifyConfig()
        self.log_dir = log_dir

    def probe_commands(self) -> dict[str, str]:
        commands = dict(self.verify.commands())
        for name, command in self.verify.probe_commands.items():
            if command:
                commands[name] = command
        return commands

    def check(self, workspace_path: Path) -> HealthReport:
        """Run every probe and return the report without raising."""
        workspace_path = Path(workspace_path)
        report = HealthReport(workspace=str(workspace_path))
        commands = self.probe_commands()
        health_dir = workspace_path / HEALTH_DIR_NAME
        log_dir = self.log_dir or health_dir
        try:
            health_dir.mkdir(parents=True, exist_ok=True)
            for name in ("tests", "lint", "typecheck"):
                command = commands.get(name)
                if not command:
                    report.probes.append(ProbeResult(name=name, command=None, passed=True, skipped=True))
                    continue
                for filename, content in PROBE_FILES[name].items():
                    (health_dir / filename).write_text(content)
                result = run_command(
                    command,
                    health_dir,
                    log_dir / f"probe_{name}.log",
                    timeout_seconds=self.verify.probe_timeout_seconds,
                    max_tail_chars=1000,
                )
                passed = result["exit_code"] == 0
                report.probes.append(
                    ProbeResult(
                        name=name,
                        command=command,
                        passed=passed,
                        exit_code=result["exit_code"],
                        output_tail=result["log_tail"],
                    )
                )
                logger.debug("Probe {} exit={} ({})", name, result["exit_code"], command)
        finally:
            shutil.rmtree(health_dir, ignore_errors=True)
        return report

    def verify_healthy(self, workspace_path: Path) -> HealthReport:
        """Probe the tool chain for `workspace_path`.

        Raises:
            UnhealthyToolchain: If any configured probe fails.
        """
        report = self.check(workspace_path)
        if not report.ok:
            for probe in report.probes:
                if not probe.passed and not probe.skipped and probe.output_tail:
                    logger.error("{} probe output:\n{}", probe.name, probe.output_tail.strip())
            raise UnhealthyToolchain(str(workspace_path), report.issues)
        logger.info(
            "Tool chain healthy for {} ({} probe(s), {} skipped)",
            workspace_path,
            len(report.probes),
            sum(1 for probe in report.probes if probe.skipped),
        )
        return report

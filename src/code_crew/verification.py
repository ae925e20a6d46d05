"""Run the verification gate (tests, lint, typecheck) inside a task workspace."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from loguru import logger

from .commands import run_command
from .config import VerifyConfig
from .models import CheckResult, VerificationResult

_FAILED_NODEID_RE = re.compile(r"^(?P<nodeid>\S+)\s+FAILED\b", re.M)
_FAILED_SUMMARY_RE = re.compile(r"^FAILED\s+(?P<nodeid>\S+)\b", re.M)
_ASSERT_RE = re.compile(r"^(E\s+.+)$", re.M)
_GENERIC_ERROR_RE = re.compile(r"^.*\b(error|Error|ERROR)\b.*$", re.M)


def summarize_failures(log_text: str, max_failed: int = 5) -> dict[str, object]:
    """Summarize failures from a raw check log.

    Args:
        log_text: Full command output.
        max_failed: Maximum number of failing test ids to capture.

    Returns:
        A dictionary with keys `failed` and `first_error`.
    """
    if not log_text:
        return {"failed": [], "first_error": None}

    failed: list[str] = []
    seen: set[str] = set()
    for regex in (_FAILED_NODEID_RE, _FAILED_SUMMARY_RE):
        for match in regex.finditer(log_text):
            nodeid = (match.group("nodeid") or "").strip()
            if not nodeid or nodeid in seen:
                continue
            seen.add(nodeid)
            failed.append(nodeid)
            if len(failed) >= max_failed:
                break
        if len(failed) >= max_failed:
            break

    # First "E   ..." line is usually the key assertion; otherwise any error line.
    m_err = _ASSERT_RE.search(log_text) or _GENERIC_ERROR_RE.search(log_text)
    first_error = m_err.group(0).strip() if m_err else None
    return {"failed": failed, "first_error": first_error}


class VerificationGate:
    def __init__(self, verify: Optional[VerifyConfig] = None, *, logs_dir: Path) -> None:
        self.verify = verify or VerifyConfig()
        self.logs_dir = logs_dir

    def run(
        self,
        task_id: str,
        attempt: int,
        workspace_path: Path,
        *,
        files_touched: Optional[list[str]] = None,
    ) -> VerificationResult:
        """Run every configured check; later checks still run after a failure."""
        result = VerificationResult(task_id=task_id, attempt=attempt, files_touched=list(files_touched or []))
        for name, command in self.verify.commands().items():
            log_path = self.logs_dir / task_id / f"attempt_{attempt}_{name}.log"
            outcome = run_command(
                command,
                workspace_path,
                log_path,
                timeout_seconds=self.verify.command_timeout_seconds,
            )
            passed = outcome["exit_code"] == 0
            summary = summarize_failures(outcome["log_tail"]) if not passed else {"first_error": None}
            result.checks.append(
                CheckResult(
                    name=name,
                    command=command,
                    passed=passed,
                    exit_code=int(outcome["exit_code"]),
                    output_tail=outcome["log_tail"][-1500:],
                    log_path=outcome["log_path"],
                    timed_out=bool(outcome["timed_out"]),
                    first_error=summary.get("first_error"),  # type: ignore[arg-type]
                )
            )
            logger.info("Task {} {}: {} (exit {})", task_id, name, "passed" if passed else "FAILED", outcome["exit_code"])
        if not result.checks:
            logger.debug("No verification commands configured for {}", task_id)
        return result

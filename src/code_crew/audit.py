"""Append-only per-attempt audit trail: machine records plus a human note."""

from __future__ import annotations

import threading
from pathlib import Path

from .io_utils import _append_jsonl, _read_jsonl
from .models import AttemptRecord


class AuditLog:
    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir
        self._lock = threading.Lock()

    def _task_dir(self, task_id: str) -> Path:
        return self.runs_dir / task_id

    def record(self, record: AttemptRecord) -> None:
        task_dir = self._task_dir(record.task_id)
        with self._lock:
            _append_jsonl(task_dir / "attempts.jsonl", record.to_dict())
            with open(task_dir / "NOTES.md", "a", encoding="utf-8") as handle:
                handle.write(self._note(record))

    def history(self, task_id: str) -> list[AttemptRecord]:
        return [AttemptRecord.from_dict(item) for item in _read_jsonl(self._task_dir(task_id) / "attempts.jsonl")]

    def notes(self, task_id: str) -> str:
        path = self._task_dir(task_id) / "NOTES.md"
        return path.read_text(encoding="utf-8") if path.exists() else ""

    @staticmethod
    def _note(record: AttemptRecord) -> str:
        lines = [
            f"## Attempt {record.attempt} ({record.status})",
            "",
            f"- Started: {record.started_at}",
            f"- Finished: {record.finished_at} ({record.duration_seconds:.1f}s)",
            f"- Spec version: {record.spec_version}",
            f"- Context size: {record.context_size} bytes",
        ]
        verification = record.verification
        if verification is not None and verification.checks:
            checks = ", ".join(f"{check.name}={'pass' if check.passed else 'fail'}" for check in verification.checks)
            lines.append(f"- Checks: {checks}")
        if record.files_touched:
            lines.append(f"- Files: {', '.join(record.files_touched[:20])}")
        if record.error:
            first_line = (record.error.strip().splitlines() or [""])[0]
            lines.append(f"- Error ({record.error_type or 'error'}): {first_line[:200]}")
        if record.decision:
            lines.append(f"- Decision: {record.decision}")
        lines.append("")
        return "\n".join(lines) + "\n"

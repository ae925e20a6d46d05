from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Optional

from .io_utils import _read_text_tail
from .utils import _now_iso

TIMEOUT_EXIT_CODE = 124


def run_command(
    command: str,
    cwd: Path,
    log_path: Path,
    *,
    timeout_seconds: Optional[int] = None,
    max_tail_chars: int = 4000,
) -> dict[str, Any]:
    """Run a shell command with output captured to `log_path`."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    timed_out = False
    exit_code: int
    with open(log_path, "w") as handle:
        try:
            result = subprocess.run(
                command,
                cwd=cwd,
                shell=True,
                stdout=handle,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout_seconds,
            )
            exit_code = result.returncode
        except subprocess.TimeoutExpired:
            timed_out = True
            exit_code = TIMEOUT_EXIT_CODE
            handle.write(f"\n[crew] Command timed out after {timeout_seconds}s\n")
    return {
        "command": command,
        "exit_code": exit_code,
        "log_path": str(log_path),
        "log_tail": _read_text_tail(log_path, max_chars=max_tail_chars),
        "timed_out": timed_out,
        "finished_at": _now_iso(),
    }

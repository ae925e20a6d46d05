"""Execution collaborator: run an external CLI agent inside file-backed sessions.

A session is a directory under `.code_crew/sessions/<id>/` holding the
prompts submitted to it and the agent's outputs, one numbered turn each. The
transcript of a session is every turn so far, prompt then output. Resubmitting
the payload of the latest turn (a transient retry) reuses that turn.
"""

from __future__ import annotations

import json
import shlex
import shutil
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from .constants import DEFAULT_AGENT_COMMAND, TRANSIENT_ERROR_MARKERS
from .errors import CollaboratorError, ExecutionTimeout
from .utils import _now_iso


@dataclass
class AgentResult:
    session_id: str
    output: str
    exit_code: int = 0
    duration_seconds: float = 0.0
    model: Optional[str] = None


class AgentBackend(Protocol):
    def create_session(self, title: str) -> str: ...

    def submit(
        self,
        session_id: str,
        payload: str,
        *,
        deadline_seconds: float,
        cwd: Optional[Path] = None,
        model: Optional[str] = None,
    ) -> AgentResult: ...

    def transcript(self, session_id: str) -> str: ...

    def delete_session(self, session_id: str) -> None: ...

    def session_exists(self, session_id: str) -> bool: ...

    def cancel(self, session_id: str) -> None: ...


def is_transient_output(text: str) -> bool:
    lower = (text or "").lower()
    return any(marker in lower for marker in TRANSIENT_ERROR_MARKERS)


class CommandAgentBackend:
    """Run `command` once per submission.

    Placeholders: `{prompt_file}`, `{model}`, `{workspace}`. Without
    `{prompt_file}` the command must read the prompt from stdin (a `-`
    argument).
    """

    def __init__(self, sessions_dir: Path, command: str = DEFAULT_AGENT_COMMAND, *, default_model: Optional[str] = None):
        self.sessions_dir = sessions_dir
        self.command = command
        self.default_model = default_model
        self._lock = threading.Lock()
        self._processes: dict[str, subprocess.Popen] = {}
        self._cancelled: set[str] = set()
        self._validate_command(command)

    @staticmethod
    def _validate_command(command: str) -> None:
        parts = shlex.split(command)
        if not parts:
            raise ValueError("Agent command is empty")
        if "{prompt_file}" not in command and "-" not in parts:
            raise ValueError("Agent command must include {prompt_file} or '-' to accept stdin input.")

    def _session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def create_session(self, title: str) -> str:
        session_id = f"ses-{uuid.uuid4().hex[:12]}"
        path = self._session_dir(session_id)
        path.mkdir(parents=True, exist_ok=False)
        (path / "meta.json").write_text(json.dumps({"id": session_id, "title": title, "created_at": _now_iso()}))
        logger.debug("Created session {} ({})", session_id, title)
        return session_id

    def session_exists(self, session_id: str) -> bool:
        return self._session_dir(session_id).exists()

    @staticmethod
    def _turn_for(session_dir: Path, payload: str) -> int:
        prompts = sorted(session_dir.glob("prompt_*.txt"))
        if prompts and prompts[-1].read_text() == payload:
            return len(prompts)
        return len(prompts) + 1

    def submit(
        self,
        session_id: str,
        payload: str,
        *,
        deadline_seconds: float,
        cwd: Optional[Path] = None,
        model: Optional[str] = None,
    ) -> AgentResult:
        """Send one prompt to the agent and wait for it to exit.

        Raises:
            ExecutionTimeout: If the agent outlives `deadline_seconds` or is cancelled.
            CollaboratorError: If the agent cannot start or exits non-zero.
        """
        session_dir = self._session_dir(session_id)
        if not session_dir.exists():
            raise CollaboratorError(f"Unknown session {session_id}")
        if deadline_seconds <= 0:
            raise ExecutionTimeout(f"Session {session_id}: deadline already passed")

        turn = self._turn_for(session_dir, payload)
        prompt_path = session_dir / f"prompt_{turn:03d}.txt"
        prompt_path.write_text(payload)
        model = model or self.default_model or ""
        try:
            formatted = self.command.format(
                prompt_file=str(prompt_path),
                model=model,
                workspace=str(cwd or Path.cwd()),
            )
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder in agent command: {exc}") from exc
        parts = shlex.split(formatted)
        use_stdin = "{prompt_file}" not in self.command

        start = time.monotonic()
        try:
            process = subprocess.Popen(
                parts,
                cwd=cwd,
                stdin=subprocess.PIPE if use_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise CollaboratorError(f"Agent command could not start: {exc}") from exc

        with self._lock:
            self._processes[session_id] = process
        try:
            output, _ = process.communicate(input=payload if use_stdin else None, timeout=deadline_seconds)
        except subprocess.TimeoutExpired:
            process.kill()
            output, _ = process.communicate()
            self._write_output(session_dir, turn, output or "")
            raise ExecutionTimeout(f"Session {session_id}: agent exceeded {deadline_seconds:.0f}s deadline")
        finally:
            with self._lock:
                self._processes.pop(session_id, None)
                cancelled = session_id in self._cancelled
                self._cancelled.discard(session_id)

        output = output or ""
        self._write_output(session_dir, turn, output)
        duration = time.monotonic() - start
        if cancelled:
            raise ExecutionTimeout(f"Session {session_id}: cancelled by shutdown")
        if process.returncode != 0:
            tail = output.strip()[-500:]
            raise CollaboratorError(
                f"Agent exited with code {process.returncode}: {tail}",
                transient=is_transient_output(output),
            )
        return AgentResult(
            session_id=session_id,
            output=output,
            exit_code=process.returncode,
            duration_seconds=duration,
            model=model or None,
        )

    @staticmethod
    def _write_output(session_dir: Path, turn: int, output: str) -> None:
        if session_dir.exists():
            (session_dir / f"output_{turn:03d}.txt").write_text(output)

    def cancel(self, session_id: str) -> None:
        with self._lock:
            process = self._processes.get(session_id)
            if process is None:
                return
            self._cancelled.add(session_id)
        if process.poll() is None:
            logger.warning("Cancelling agent process for session {}", session_id)
            process.kill()

    def transcript(self, session_id: str) -> str:
        session_dir = self._session_dir(session_id)
        if not session_dir.exists():
            return ""
        parts = []
        for prompt in sorted(session_dir.glob("prompt_*.txt")):
            parts.append(prompt.read_text())
            output = prompt.with_name(prompt.name.replace("prompt_", "output_", 1))
            if output.exists():
                parts.append(output.read_text())
        return "\n\n".join(part for part in parts if part)

    def outputs(self, session_id: str) -> list[str]:
        session_dir = self._session_dir(session_id)
        return [path.read_text() for path in sorted(session_dir.glob("output_*.txt"))]

    def delete_session(self, session_id: str) -> None:
        self.cancel(session_id)
        shutil.rmtree(self._session_dir(session_id), ignore_errors=True)
        logger.debug("Deleted session {}", session_id)

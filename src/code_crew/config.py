"""Load optional crew configuration from `.code_crew/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from .constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DRIFT_GROWTH,
    DEFAULT_PLANNING_SESSIONS,
    DEFAULT_PLANNING_TIMEOUT_SECONDS,
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_REBASE_MAX_CONTEXT_BYTES,
    DEFAULT_REBASE_MAX_DURATION_SECONDS,
    DEFAULT_REBASE_THRESHOLD,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    MAX_CONSTRAINTS,
    MAX_CONTEXT_BYTES,
    MAX_GOTCHAS,
    MAX_STATEMENT_CHARS,
    STATE_DIR_NAME,
    VERIFY_PROFILES,
)
from .io_utils import _load_data_with_error


class LimitsConfig(BaseModel):
    max_context_bytes: int = Field(MAX_CONTEXT_BYTES, ge=256)
    max_constraints: int = Field(MAX_CONSTRAINTS, ge=0)
    max_gotchas: int = Field(MAX_GOTCHAS, ge=0)
    max_statement_chars: int = Field(MAX_STATEMENT_CHARS, ge=10)
    max_drift_growth: float = Field(DEFAULT_MAX_DRIFT_GROWTH, gt=0)
    abort_on_drift: bool = False


class WorkersConfig(BaseModel):
    concurrency: int = Field(DEFAULT_CONCURRENCY, ge=1, le=64)
    task_timeout_seconds: int = Field(DEFAULT_TASK_TIMEOUT_SECONDS, ge=1)
    agent_command: str = DEFAULT_AGENT_COMMAND
    retry_attempts: int = Field(DEFAULT_RETRY_ATTEMPTS, ge=1, le=10)
    retry_base_delay_seconds: float = Field(DEFAULT_RETRY_BASE_DELAY_SECONDS, ge=0)
    retry_max_delay_seconds: float = Field(DEFAULT_RETRY_MAX_DELAY_SECONDS, ge=0)
    # Model per task kind: documentation, simple_change, complex, implementation.
    models: dict[str, str] = Field(default_factory=dict)
    use_worktrees: bool = True


class VerifyConfig(BaseModel):
    profile: str = "none"
    test_command: Optional[str] = None
    lint_command: Optional[str] = None
    typecheck_command: Optional[str] = None
    command_timeout_seconds: int = Field(DEFAULT_COMMAND_TIMEOUT_SECONDS, ge=1)
    probe_timeout_seconds: int = Field(DEFAULT_PROBE_TIMEOUT_SECONDS, ge=1)
    health_check: bool = True
    # Probe command per check name; defaults to the gate command itself.
    probe_commands: dict[str, str] = Field(default_factory=dict)

    def commands(self) -> dict[str, str]:
        """Resolve gate commands keyed by check name, explicit commands winning over the profile."""
        profile = VERIFY_PROFILES.get(self.profile, {})
        resolved = {
            "tests": self.test_command or profile.get("test_command"),
            "lint": self.lint_command or profile.get("lint_command"),
            "typecheck": self.typecheck_command or profile.get("typecheck_command"),
        }
        return {name: cmd for name, cmd in resolved.items() if cmd}


class RebaseConfig(BaseModel):
    threshold: int = Field(DEFAULT_REBASE_THRESHOLD, ge=1)
    max_attempts: int = Field(DEFAULT_MAX_ATTEMPTS, ge=1)
    max_context_bytes: int = Field(DEFAULT_REBASE_MAX_CONTEXT_BYTES, ge=1)
    max_duration_seconds: int = Field(DEFAULT_REBASE_MAX_DURATION_SECONDS, ge=1)
    detect_scope_escape: bool = True


class PlanningConfig(BaseModel):
    sessions: int = Field(DEFAULT_PLANNING_SESSIONS, ge=1, le=3)
    timeout_seconds: int = Field(DEFAULT_PLANNING_TIMEOUT_SECONDS, ge=1)
    model: Optional[str] = None


class CrewConfig(BaseModel):
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    verify: VerifyConfig = Field(default_factory=VerifyConfig)
    rebase: RebaseConfig = Field(default_factory=RebaseConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)


def load_crew_config(project_dir: Path) -> tuple[CrewConfig, str | None]:
    """Load the optional crew config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns the
        defaults and `None`. On a parse or validation error the defaults are
        returned alongside the message so callers can decide whether to stop.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return CrewConfig(), err
    return parse_crew_config(data)


def parse_crew_config(data: dict[str, Any]) -> tuple[CrewConfig, str | None]:
    try:
        return CrewConfig.model_validate(data or {}), None
    except ValidationError as exc:
        issues = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return CrewConfig(), f"{CONFIG_FILE}: {issues}"

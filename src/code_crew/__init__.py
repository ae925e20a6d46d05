"""Provide the public `code_crew` package exports."""

from __future__ import annotations

from .backlog import BacklogManager, parse_backlog
from .config import CrewConfig, load_crew_config
from .context import ContextBuilder, ContextVerifier, compress
from .models import Backlog, Task, TaskStatus
from .planning import BacklogGenerator, PlanningCoordinator
from .pool import RunSummary, WorkerPool

__all__ = [
    "Backlog",
    "BacklogGenerator",
    "BacklogManager",
    "ContextBuilder",
    "ContextVerifier",
    "CrewConfig",
    "PlanningCoordinator",
    "RunSummary",
    "Task",
    "TaskStatus",
    "WorkerPool",
    "compress",
    "load_crew_config",
    "parse_backlog",
]

"""Pick the agent model for a task from its title and scope."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from .models import Task


class TaskKind(str, Enum):
    DOCUMENTATION = "documentation"
    SIMPLE_CHANGE = "simple_change"
    COMPLEX = "complex"
    IMPLEMENTATION = "implementation"


_DOC_TITLE_WORDS = ("document", "readme", "comment", "docstring", "changelog")


class ModelRouter:
    def __init__(self, models: Optional[dict[str, str]] = None, default_model: Optional[str] = None) -> None:
        self.models = dict(models or {})
        self.default_model = default_model

    @staticmethod
    def classify(task: Task) -> TaskKind:
        title = task.title.lower()
        description = task.description.lower()
        if any(word in title for word in _DOC_TITLE_WORDS) or "add documentation" in description:
            return TaskKind.DOCUMENTATION
        hours = task.scope.estimated_hours
        files = len(task.scope.files_hint)
        if hours > 4 or files > 5:
            return TaskKind.COMPLEX
        if 0 < hours <= 2 and files <= 2:
            return TaskKind.SIMPLE_CHANGE
        return TaskKind.IMPLEMENTATION

    def model_for(self, task: Task) -> Optional[str]:
        kind = self.classify(task)
        if kind.value in self.models:
            return self.models[kind.value]
        if kind == TaskKind.SIMPLE_CHANGE and TaskKind.DOCUMENTATION.value in self.models:
            return self.models[TaskKind.DOCUMENTATION.value]
        return self.models.get(TaskKind.IMPLEMENTATION.value, self.default_model)

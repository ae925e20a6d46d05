"""Versioned task specifications stored as `specs/<task_id>/vN.yaml`."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .io_utils import _atomic_write_yaml, _load_data_with_error
from .utils import _now_iso, _parse_iso

_VERSION_FILE_RE = re.compile(r"^v(\d+)\.yaml$")


@dataclass
class SpecVersion:
    version: int
    content: dict[str, Any]
    timestamp: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "timestamp": self.timestamp, "reason": self.reason, "content": self.content}


class SpecRepository:
    def __init__(self, specs_dir: Path) -> None:
        self.specs_dir = specs_dir

    def versions(self, task_id: str) -> list[int]:
        task_dir = self.specs_dir / task_id
        if not task_dir.exists():
            return []
        found = []
        for path in task_dir.iterdir():
            match = _VERSION_FILE_RE.match(path.name)
            if match:
                found.append(int(match.group(1)))
        return sorted(found)

    def save(self, task_id: str, content: dict[str, Any], reason: str, *, version: Optional[int] = None) -> int:
        """Write a new spec version and return its number."""
        existing = self.versions(task_id)
        new_version = version if version is not None else (existing[-1] + 1 if existing else 1)
        if existing and new_version <= existing[-1]:
            raise ValueError(f"Spec version {new_version} for {task_id} is not newer than v{existing[-1]}")
        spec = SpecVersion(version=new_version, content=content, timestamp=_now_iso(), reason=reason)
        _atomic_write_yaml(self.specs_dir / task_id / f"v{new_version}.yaml", spec.to_dict())
        logger.info("Saved spec v{} for {}: {}", new_version, task_id, reason)
        return new_version

    def load(self, task_id: str, version: int) -> SpecVersion:
        path = self.specs_dir / task_id / f"v{version}.yaml"
        if not path.exists():
            raise FileNotFoundError(f"No spec v{version} for {task_id}")
        data, err = _load_data_with_error(path, {})
        if err:
            raise ValueError(err)
        return SpecVersion(
            version=int(data.get("version") or version),
            content=dict(data.get("content") or {}),
            timestamp=str(data.get("timestamp") or ""),
            reason=str(data.get("reason") or ""),
        )

    def latest(self, task_id: str) -> Optional[SpecVersion]:
        versions = self.versions(task_id)
        return self.load(task_id, versions[-1]) if versions else None

    def history(self, task_id: str) -> list[SpecVersion]:
        specs: list[SpecVersion] = []
        for version in self.versions(task_id):
            try:
                specs.append(self.load(task_id, version))
            except ValueError as exc:
                logger.warning("Failed to load spec v{} for {}: {}", version, task_id, exc)
        return specs

    def compare(self, task_id: str, version1: int, version2: int) -> dict[str, Any]:
        v1 = self.load(task_id, version1)
        v2 = self.load(task_id, version2)
        t1, t2 = _parse_iso(v1.timestamp), _parse_iso(v2.timestamp)
        changed = sorted(
            key for key in set(v1.content) | set(v2.content) if v1.content.get(key) != v2.content.get(key)
        )
        return {
            "v1": v1,
            "v2": v2,
            "size_diff": len(str(v2.content.get("description", ""))) - len(str(v1.content.get("description", ""))),
            "time_diff_seconds": (t2 - t1).total_seconds() if t1 and t2 else None,
            "changed_fields": changed,
        }

"""Deterministic structural merge of the three planning documents.

No generative step: sections are extracted by heading and stitched into a
fixed outline, so the same inputs always produce the same plan.
"""

from __future__ import annotations

import re
from typing import Optional

MISSING_SECTION = "_Section not found in planning output_"
EMPTY_SECTION = "_Empty section_"
DEFAULT_STEPS = (
    "Review requirements",
    "Implement core functionality",
    "Add tests",
    "Review and refactor",
)

_NUMBERED_RE = re.compile(r"^\s*\d+\.\s+(.*)$")


def extract_section(doc: str, heading: str) -> str:
    """Return the body under the first line containing `heading`, up to the next `##` heading."""
    lines = doc.splitlines()
    marker = heading.lower()
    start: Optional[int] = None
    for idx, line in enumerate(lines):
        if marker in line.lower():
            start = idx
            break
    if start is None:
        return MISSING_SECTION
    end = len(lines)
    for idx in range(start + 1, len(lines)):
        if lines[idx].startswith("##") and marker not in lines[idx].lower():
            end = idx
            break
    body = "\n".join(lines[start + 1 : end]).strip()
    return body or EMPTY_SECTION


def extract_numbered_list(doc: str) -> list[str]:
    steps = []
    for line in doc.splitlines():
        match = _NUMBERED_RE.match(line)
        if match and match.group(1).strip():
            steps.append(match.group(1).strip())
    return steps


def synthesize_steps(spec: str, arch: str) -> str:
    unique: list[str] = []
    for step in extract_numbered_list(spec) + extract_numbered_list(arch):
        if step not in unique:
            unique.append(step)
    if not unique:
        unique = list(DEFAULT_STEPS)
    return "\n".join(f"{idx}. {step}" for idx, step in enumerate(unique, 1))


def structured_merge(spec: str, arch: str, qa: str) -> str:
    sections = [
        ("1. Requirements", extract_section(spec, "## Requirements")),
        ("2. Acceptance Criteria", extract_section(spec, "## Acceptance")),
        ("3. Architecture Design", extract_section(arch, "## Design")),
        ("4. API & Data Models", extract_section(arch, "## API")),
        ("5. Test Plan", extract_section(qa, "## Test Plan")),
        ("6. Risks & Mitigations", extract_section(qa, "## Risks")),
        ("7. Implementation Steps", synthesize_steps(spec, arch)),
    ]
    parts = [
        "# Unified Implementation Plan",
        "",
        "> Merged structurally from the spec, architecture and QA planning sessions.",
        "",
        "---",
        "",
    ]
    for title, body in sections:
        parts.extend([f"## {title}", "", body, "", "---", ""])
    return "\n".join(parts).rstrip() + "\n"

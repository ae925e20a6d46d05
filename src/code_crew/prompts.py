"""Build the text prompts passed to planning and worker sessions."""

from __future__ import annotations


def _build_planning_prompt(role: str, context: str) -> str:
    if role == "spec":
        return f"""You are the Product/Spec Planning Agent.

Analyze this context and produce a SPEC.md document with:
## Requirements
- Clear, numbered requirements
- Functional and non-functional requirements

## Acceptance Criteria
- Testable acceptance criteria for each requirement
- Use "GIVEN/WHEN/THEN" format

Be thorough but concise. Your exploration context will be deleted; only your final document matters.

CONTEXT:
{context}
"""
    if role == "arch":
        return f"""You are the Architecture Planning Agent.

Analyze this context and produce an ARCH.md document with:
## Design
- System architecture overview
- Component diagram (ASCII)
- Key design decisions

## API
- API endpoints or interfaces
- Data models
- Integration points

Be thorough but concise. Your exploration context will be deleted; only your final document matters.

CONTEXT:
{context}
"""
    if role == "qa":
        return f"""You are the QA/Risk Planning Agent.

Analyze this context and produce a QA.md document with:
## Test Plan
- Unit test strategy
- Integration test plan
- Edge cases to cover

## Risks
- Technical risks and mitigations
- Dependencies and blockers
- Gotchas from similar implementations

Be thorough but concise. Your exploration context will be deleted; only your final document matters.

CONTEXT:
{context}
"""
    raise ValueError(f"Unknown planning role: {role}")


def _build_backlog_prompt(plan: str, track_id: str, created_at: str) -> str:
    return f"""You are a task breakdown specialist.

Analyze this implementation plan and break it down into atomic, independent tasks.

PLAN:
{plan}

Generate a YAML backlog with this EXACT structure:

```yaml
version: "1.0"
track_id: "{track_id}"
created_at: "{created_at}"
updated_at: "{created_at}"
tasks:
  - id: "T01"
    title: "Short task title"
    description: "Detailed description"
    status: "pending"
    depends_on: []
    acceptance:
      - "Acceptance criterion 1"
    attempts: 0
    scope:
      files_hint:
        - "src/path/to/file.py"
      estimated_hours: 2
    context:
      constraints:
        - "Must be backward compatible"
      patterns:
        - "src/path/to/example.py:10-40 existing pattern to follow"
      gotchas:
        - "Watch out for Y"
```

RULES:
1. Each task must be atomic (1-4 hours)
2. Every task must have at least one acceptance criterion
3. Use depends_on for task dependencies; never create cycles
4. At most 5 constraints and 3 gotchas per task, each under 100 characters
5. Patterns are "path:start-end description", never code
6. Be specific about files to modify

Generate the backlog now:
"""


def _build_task_prompt(context: str) -> str:
    """Wrap a verified task context with the worker's standing instructions."""
    return f"""{context}
## Instructions
- Implement exactly this task in the current working directory.
- Keep changes inside the files listed above unless the task cannot be completed otherwise.
- Make the acceptance criteria pass; the verification gate runs tests, lint and type checks.
- Do not commit; the coordinator merges your workspace.
"""

"""Provide the `code-crew` CLI: plan, generate a backlog, run the worker pool and inspect state."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from .agents import CommandAgentBackend
from .audit import AuditLog
from .backlog import BacklogManager
from .config import CrewConfig, load_crew_config
from .constants import (
    DEFAULT_OUTPUT_DIR,
    DRIFT_REPORT_FILE,
    EVENTS_FILE,
    RUNS_DIR,
    SESSIONS_DIR,
    SPECS_DIR,
    STATE_DIR_NAME,
    WORKSPACES_DIR,
)
from .context import ContextBuilder, ContextVerifier
from .errors import (
    CollaboratorError,
    ContextError,
    CrewError,
    CycleError,
    ExecutionTimeout,
    InvalidTransition,
    ParseError,
    SessionLeakError,
    UnhealthyToolchain,
)
from .health import InstrumentationChecker
from .models import TaskStatus
from .planning import BacklogGenerator, PlanningCoordinator, default_backlog_path
from .pool import WorkerPool, render_summary
from .rebase import RebaseEngine
from .routing import ModelRouter
from .shutdown import ShutdownManager
from .spec_history import SpecRepository
from .workspace import WorkspaceManager, default_backend


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


_console = Console()


def _resolve_project_dir(value: Optional[str]) -> Path:
    return Path(value or ".").resolve()


def _state_dir(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME


def _backlog_path(args: argparse.Namespace, project_dir: Path) -> Path:
    if getattr(args, "backlog", None):
        return Path(args.backlog).resolve()
    return default_backlog_path(project_dir / DEFAULT_OUTPUT_DIR)


def _load_config(args: argparse.Namespace, project_dir: Path) -> Optional[CrewConfig]:
    config, err = load_crew_config(project_dir)
    if err:
        sys.stderr.write(f"Invalid crew config: {err}\n")
        return None
    workers = config.workers
    if getattr(args, "concurrency", None):
        workers.concurrency = int(args.concurrency)
    if getattr(args, "agent_command", None):
        workers.agent_command = args.agent_command
    if getattr(args, "task_timeout", None):
        workers.task_timeout_seconds = int(args.task_timeout)
    if getattr(args, "no_worktrees", False):
        workers.use_worktrees = False
    if getattr(args, "skip_health_check", False):
        config.verify.health_check = False
    return config


def _load_backlog(path: Path) -> Optional[BacklogManager]:
    manager = BacklogManager(path)
    try:
        manager.load()
    except CycleError as exc:
        sys.stderr.write(f"{exc}\nBreak the cycle in {path} and try again.\n")
        return None
    except ParseError as exc:
        sys.stderr.write(f"{exc}\n")
        return None
    return manager


def _agent_backend(config: CrewConfig, state_dir: Path) -> CommandAgentBackend:
    return CommandAgentBackend(state_dir / SESSIONS_DIR, config.workers.agent_command)


def _batches_tree(manager: BacklogManager) -> Tree:
    tree = Tree(f"[bold]{manager.backlog.track_id}[/bold] execution plan")
    tasks = {task.id: task for task in manager.all_tasks()}
    for idx, batch in enumerate(manager.execution_batches(), 1):
        branch = tree.add(f"[cyan]Batch {idx}[/cyan] ({len(batch)} task(s), parallel)")
        for task_id in batch:
            task = tasks[task_id]
            deps = f" [dim]<- {', '.join(task.depends_on)}[/dim]" if task.depends_on else ""
            branch.add(f"{task_id}: {task.title} [dim]({task.status.value})[/dim]{deps}")
    return tree


# -- plan / backlog --------------------------------------------------------------


def _plan(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config = _load_config(args, project_dir)
    if config is None:
        return 2
    context_path = Path(args.context_file)
    if not context_path.exists():
        sys.stderr.write(f"Context document not found: {context_path}\n")
        return 1
    output_dir = Path(args.output_dir or project_dir / DEFAULT_OUTPUT_DIR)
    state_dir = _state_dir(project_dir)
    try:
        backend = _agent_backend(config, state_dir)
    except ValueError as exc:
        sys.stderr.write(f"{exc}\n")
        return 2
    verifier = ContextVerifier(config.limits)
    shutdown = ShutdownManager()
    with shutdown:
        coordinator = PlanningCoordinator(
            backend,
            output_dir,
            config=config.planning,
            verifier=verifier,
            shutdown=shutdown,
            cwd=project_dir,
        )
        try:
            plan = coordinator.plan_in_parallel(context_path.read_text(encoding="utf-8"))
        except SessionLeakError as exc:
            sys.stderr.write(f"{exc}\nPlanning sessions may still hold exploratory context; delete them manually.\n")
            return 1
        except (ExecutionTimeout, CollaboratorError, ContextError) as exc:
            sys.stderr.write(f"Planning failed: {exc}\n")
            return 1
    _console.print(f"[green]Plan written to {plan.plan_path}[/green] ({plan.duration_seconds:.1f}s)")
    if not args.backlog_track:
        return 0
    return _generate_backlog(
        backend, config, verifier, plan.text, args.backlog_track, default_backlog_path(output_dir), project_dir
    )


def _backlog(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config = _load_config(args, project_dir)
    if config is None:
        return 2
    plan_path = Path(args.plan_file)
    if not plan_path.exists():
        sys.stderr.write(f"Plan not found: {plan_path}\n")
        return 1
    output = Path(args.output) if args.output else default_backlog_path(plan_path.parent)
    try:
        backend = _agent_backend(config, _state_dir(project_dir))
    except ValueError as exc:
        sys.stderr.write(f"{exc}\n")
        return 2
    return _generate_backlog(
        backend,
        config,
        ContextVerifier(config.limits),
        plan_path.read_text(encoding="utf-8"),
        args.track_id,
        output,
        project_dir,
    )


def _generate_backlog(
    backend: CommandAgentBackend,
    config: CrewConfig,
    verifier: ContextVerifier,
    plan_text: str,
    track_id: str,
    output: Path,
    project_dir: Path,
) -> int:
    generator = BacklogGenerator(backend, config=config.planning, verifier=verifier, cwd=project_dir)
    try:
        backlog = generator.generate(plan_text, track_id, output)
    except (ParseError, CycleError) as exc:
        sys.stderr.write(f"Generated backlog rejected: {exc}\n")
        return 1
    except (SessionLeakError, ExecutionTimeout, CollaboratorError) as exc:
        sys.stderr.write(f"Backlog generation failed: {exc}\n")
        return 1
    _console.print(f"[green]Backlog written to {output}[/green] ({len(backlog.tasks)} task(s))")
    return 0


# -- run ---------------------------------------------------------------------------


def _run(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config = _load_config(args, project_dir)
    if config is None:
        return 2
    manager = _load_backlog(_backlog_path(args, project_dir))
    if manager is None:
        return 1

    if args.dry_run:
        _console.print(_batches_tree(manager))
        return 0

    state_dir = _state_dir(project_dir)
    verifier = ContextVerifier(config.limits, known_task_ids=manager.backlog.task_ids())
    builder = ContextBuilder(verifier)
    workspaces = WorkspaceManager(
        default_backend(project_dir, state_dir / WORKSPACES_DIR, use_worktrees=config.workers.use_worktrees)
    )
    try:
        agent = _agent_backend(config, state_dir)
    except ValueError as exc:
        sys.stderr.write(f"{exc}\n")
        return 2
    pool = WorkerPool(
        manager,
        agent=agent,
        workspaces=workspaces,
        state_dir=state_dir,
        project_dir=project_dir,
        config=config,
        builder=builder,
        rebase=RebaseEngine(
            config.rebase,
            backlog=manager,
            workspaces=workspaces,
            specs=SpecRepository(state_dir / SPECS_DIR),
            builder=builder,
        ),
        router=ModelRouter(config.workers.models),
        console=_console,
    )

    shutdown = ShutdownManager()
    shutdown.register("workspaces", workspaces.destroy_all)
    shutdown.register("worker-pool", pool.request_shutdown)
    with shutdown:
        try:
            summary = pool.run(concurrency_limit=config.workers.concurrency)
        except UnhealthyToolchain as exc:
            sys.stderr.write(f"{exc}\nFix the test/lint/typecheck commands in {STATE_DIR_NAME}/config.yaml.\n")
            render_summary(pool.summary, _console)
            return 3
        except InvalidTransition as exc:
            sys.stderr.write(f"Backlog state invariant violated: {exc}\n")
            return 4
        except CrewError as exc:
            sys.stderr.write(f"Run stopped: {exc}\nInspect {STATE_DIR_NAME}/{EVENTS_FILE}, fix the cause and rerun.\n")
            render_summary(pool.summary, _console)
            return 1
    render_summary(summary, _console)
    if not summary.ok or not manager.is_drained():
        return 1
    stuck = [task for task in manager.all_tasks() if task.status in {TaskStatus.ABANDONED, TaskStatus.BLOCKED}]
    return 1 if stuck else 0


# -- inspection --------------------------------------------------------------------


def _status(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    manager = _load_backlog(_backlog_path(args, project_dir))
    if manager is None:
        return 1
    tasks = manager.all_tasks()
    if args.json:
        payload = {
            "track_id": manager.backlog.track_id,
            "stats": manager.stats(),
            "ready": [task.id for task in manager.get_ready_tasks()],
            "tasks": [task.to_dict() for task in tasks],
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 0

    table = Table(title=f"Backlog {manager.backlog.track_id}")
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Spec", justify="right")
    table.add_column("Depends on")
    table.add_column("Last error", overflow="fold")
    for task in tasks:
        table.add_row(
            task.id,
            task.title,
            task.status.value,
            str(task.attempts),
            f"v{task.spec_version}",
            ", ".join(task.depends_on),
            (task.last_error or "").splitlines()[0][:80] if task.last_error else "",
        )
    _console.print(table)
    stats = manager.stats()
    _console.print(", ".join(f"{name}: {count}" for name, count in stats.items() if count), highlight=False)
    return 0


def _validate(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config = _load_config(args, project_dir)
    if config is None:
        return 2
    manager = _load_backlog(_backlog_path(args, project_dir))
    if manager is None:
        return 1
    builder = ContextBuilder(ContextVerifier(config.limits, known_task_ids=manager.backlog.task_ids()))
    table = Table(title="Context check")
    table.add_column("ID", style="bold")
    table.add_column("Bytes", justify="right")
    table.add_column("Result")
    problems = 0
    for task in manager.all_tasks():
        try:
            context = builder.build(task)
        except ContextError as exc:
            try:
                context = builder.build_or_compress(task)
            except ContextError as final:
                problems += 1
                table.add_row(task.id, "-", f"[red]{final}[/red]")
                continue
            table.add_row(task.id, str(context.size), f"[yellow]compressible[/yellow] ({exc})")
            continue
        table.add_row(task.id, str(context.size), "[green]ok[/green]")
    _console.print(_batches_tree(manager))
    _console.print(table)
    return 1 if problems else 0


def _health(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config = _load_config(args, project_dir)
    if config is None:
        return 2
    checker = InstrumentationChecker(config.verify, log_dir=_state_dir(project_dir) / "health")
    report = checker.check(project_dir)
    table = Table(title=f"Tool chain health: {project_dir}")
    table.add_column("Probe", style="bold")
    table.add_column("Command")
    table.add_column("Result")
    for probe in report.probes:
        if probe.skipped:
            result = "[dim]not configured[/dim]"
        elif probe.passed:
            result = "[green]ok[/green]"
        else:
            result = f"[red]exit {probe.exit_code}[/red]"
        table.add_row(probe.name, probe.command or "-", result)
    _console.print(table)
    return 0 if report.ok else 3


def _analyze(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config = _load_config(args, project_dir)
    if config is None:
        return 2
    manager = _load_backlog(_backlog_path(args, project_dir))
    if manager is None:
        return 1
    audit = AuditLog(_state_dir(project_dir) / RUNS_DIR)
    tasks = {task.id: task for task in manager.all_tasks()}
    records = [record for task_id in tasks for record in audit.history(task_id)]
    engine = RebaseEngine(config.rebase, builder=ContextBuilder(ContextVerifier(config.limits)))
    analysis = engine.analyze_batch(records, tasks)
    if args.json:
        sys.stdout.write(json.dumps(analysis, indent=2, sort_keys=True) + "\n")
        return 0
    _console.print(
        f"Attempts: {analysis['total_attempts']}, failed: {analysis['failed_attempts']}, "
        f"needing rebase: {analysis['needs_rebase']}",
        highlight=False,
    )
    if analysis["recommendations"]:
        table = Table(title="Rebase recommendations")
        table.add_column("Task", style="bold")
        table.add_column("Action")
        table.add_column("Reason", overflow="fold")
        for item in analysis["recommendations"]:
            table.add_row(item["task_id"], item["action"], item["reason"])
        _console.print(table)
    return 0


def _spec_history(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    specs = SpecRepository(_state_dir(project_dir) / SPECS_DIR)
    versions = specs.history(args.task_id)
    if not versions:
        sys.stdout.write(f"No spec history for {args.task_id}\n")
        return 0
    payload: dict[str, Any] = {"task_id": args.task_id, "versions": [item.to_dict() for item in versions]}
    if len(versions) > 1:
        change = specs.compare(args.task_id, versions[-2].version, versions[-1].version)
        payload["latest_change"] = {key: change[key] for key in ("size_diff", "time_diff_seconds", "changed_fields")}
    if args.json:
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 0
    table = Table(title=f"Spec history: {args.task_id}")
    table.add_column("Version", justify="right")
    table.add_column("Timestamp")
    table.add_column("Reason", overflow="fold")
    for item in versions:
        table.add_row(f"v{item.version}", item.timestamp, item.reason)
    _console.print(table)
    change = payload.get("latest_change")
    if change:
        _console.print(f"Latest change touched: {', '.join(change['changed_fields']) or 'nothing'}", highlight=False)
    return 0


def _drift(args: argparse.Namespace) -> int:
    path = _state_dir(_resolve_project_dir(args.project_dir)) / DRIFT_REPORT_FILE
    if not path.exists():
        sys.stdout.write("No drift report yet; run the worker pool first.\n")
        return 0
    sys.stdout.write(path.read_text(encoding="utf-8"))
    return 0


def _archive(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    manager = _load_backlog(_backlog_path(args, project_dir))
    if manager is None:
        return 1
    try:
        manager.archive(args.task_id)
    except (CrewError, KeyError, ValueError) as exc:
        sys.stderr.write(f"Cannot archive {args.task_id}: {exc}\n")
        return 1
    manager.save()
    _console.print(f"Archived {args.task_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Code Crew: dependency-gated task orchestration for coding agents")
    parser.add_argument(
        "--project-dir",
        default=None,
        help="Target project directory (default: current working directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command")

    plan = subparsers.add_parser("plan", help="Run the parallel planning sessions and merge PLAN.md")
    plan.add_argument("context_file", help="Context document (PRD, feature request) to plan from")
    plan.add_argument("--output-dir", default=None, help=f"Where to write the plan (default: {DEFAULT_OUTPUT_DIR}/)")
    plan.add_argument("--backlog-track", default=None, help="Also generate BACKLOG.yaml with this track id")
    plan.add_argument("--agent-command", default=None, help="Override the agent command")
    plan.set_defaults(func=_plan)

    backlog = subparsers.add_parser("backlog", help="Generate BACKLOG.yaml from a plan")
    backlog.add_argument("plan_file")
    backlog.add_argument("--track-id", required=True)
    backlog.add_argument("--output", default=None, help="Backlog path (default: next to the plan)")
    backlog.add_argument("--agent-command", default=None, help="Override the agent command")
    backlog.set_defaults(func=_backlog)

    run = subparsers.add_parser("run", help="Drain the backlog with the worker pool")
    run.add_argument("--backlog", default=None, help="Backlog manifest path")
    run.add_argument("--concurrency", type=int, default=None, help="Maximum tasks in flight")
    run.add_argument("--agent-command", default=None, help="Override the agent command")
    run.add_argument("--task-timeout", type=int, default=None, help="Per-task deadline in seconds")
    run.add_argument("--no-worktrees", action="store_true", help="Copy the project instead of using git worktrees")
    run.add_argument("--skip-health-check", action="store_true", help="Do not probe the tool chain")
    run.add_argument("--dry-run", action="store_true", help="Show the execution batches and exit")
    run.set_defaults(func=_run)

    status = subparsers.add_parser("status", help="Show backlog status")
    status.add_argument("--backlog", default=None)
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=_status)

    validate = subparsers.add_parser("validate", help="Validate the backlog and every task context")
    validate.add_argument("--backlog", default=None)
    validate.set_defaults(func=_validate)

    health = subparsers.add_parser("health", help="Probe the test runner, linter and type checker")
    health.set_defaults(func=_health)

    analyze = subparsers.add_parser("analyze", help="Summarize rebase recommendations from the audit trail")
    analyze.add_argument("--backlog", default=None)
    analyze.add_argument("--json", action="store_true")
    analyze.set_defaults(func=_analyze)

    history = subparsers.add_parser("spec-history", help="Show the spec versions of a task")
    history.add_argument("task_id")
    history.add_argument("--json", action="store_true")
    history.set_defaults(func=_spec_history)

    drift = subparsers.add_parser("drift", help="Show the drift report from the last run")
    drift.set_defaults(func=_drift)

    archive = subparsers.add_parser("archive", help="Move a finished task to ARCHIVE.yaml")
    archive.add_argument("task_id")
    archive.add_argument("--backlog", default=None)
    archive.set_defaults(func=_archive)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)

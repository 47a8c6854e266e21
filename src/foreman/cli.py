from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from foreman.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    CommandBackend,
    ResilientInvoker,
    RetryPolicy,
)
from foreman.config import ForemanConfig, load_config, save_config
from foreman.controller import LoopController, LoopState, SpecPaths
from foreman.gates import GateRunner
from foreman.learnings import CATEGORIES, LearningStore
from foreman.probe import PreviewProbe
from foreman.shutdown import ShutdownFlag, signal_handlers
from foreman.state import IterationJournal, StateError, StateStore
from foreman.state.store import atomic_write_text
from foreman.tasklist import TaskListDocument, TaskListError, new_document
from foreman.verifier import CompletionVerifier

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    paths: SpecPaths
    store: StateStore
    learnings: LearningStore
    shutdown: ShutdownFlag
    controller: LoopController


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _resolve_spec_dir(repo_root: Path, spec_value: str) -> Path:
    candidate = Path(spec_value)
    if not candidate.is_absolute():
        named = repo_root / "specs" / spec_value
        candidate = named if (named / "SPEC.md").exists() else repo_root / candidate
    if candidate.name == "SPEC.md":
        candidate = candidate.parent
    candidate = candidate.resolve()
    if not (candidate / "SPEC.md").exists():
        raise click.ClickException(f"No SPEC.md found in {candidate}")
    return candidate


def _build_backend(config: ForemanConfig) -> AgentBackend:
    agent = config.agent
    if agent.backend == "codex":
        return CodexBackend(binary=agent.binary or "codex", extra_args=agent.extra_args)
    if agent.backend == "command":
        if not agent.command:
            raise click.ClickException(
                "agent.backend = \"command\" requires agent.command in the config."
            )
        return CommandBackend(agent.command, extra_args=agent.extra_args)
    return ClaudeCodeBackend(binary=agent.binary or "claude", extra_args=agent.extra_args)


def _record_backend_event(store: StateStore, event: dict[str, Any]) -> None:
    metrics = store.get_metrics()
    events = metrics.get("backend_events", [])
    if not isinstance(events, list):
        events = []
    event_payload = dict(event)
    event_payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
    events.append(event_payload)
    metrics["backend_events"] = events[-200:]

    if event.get("event") == "agent_retry":
        metrics["agent_retry_count"] = int(metrics.get("agent_retry_count", 0)) + 1
    if event.get("event") == "agent_permanent_failure":
        metrics["agent_permanent_failure_count"] = (
            int(metrics.get("agent_permanent_failure_count", 0)) + 1
        )

    store.set_metrics(metrics)


def _build_invoker(
    config: ForemanConfig, repo_root: Path, store: StateStore, shutdown: ShutdownFlag
) -> ResilientInvoker:
    policy = RetryPolicy(
        max_retries=max(1, int(config.agent.max_retries)),
        backoff_seconds=max(0.0, float(config.agent.retry_delay_seconds)),
        timeout_seconds=max(1.0, float(config.agent.timeout_seconds)),
        grace_seconds=max(0.0, float(config.agent.graceful_shutdown_seconds)),
    )
    return ResilientInvoker(
        _build_backend(config),
        policy,
        shutdown=shutdown,
        event_hook=lambda event: _record_backend_event(store, event),
        cwd=repo_root,
    )


def _build_gate_runner(
    config: ForemanConfig,
    repo_root: Path,
    store: StateStore | None,
    shutdown: ShutdownFlag | None = None,
) -> GateRunner:
    probe = None
    if config.probe.url.strip():
        probe = PreviewProbe(config.probe.url.strip(), timeout_seconds=config.probe.timeout_seconds)
    return GateRunner(repo_root, config.gates, store=store, probe=probe, shutdown=shutdown)


def _learning_store(repo_root: Path, config: ForemanConfig) -> LearningStore:
    path = Path(config.learnings.path)
    if not path.is_absolute():
        path = repo_root / path
    return LearningStore(path)


def _load_runtime(repo_root: Path, config_path: Path, spec_dir: Path) -> Runtime:
    config = load_config(config_path)
    paths = SpecPaths(spec_dir)
    store = StateStore(paths.state_dir)
    learnings = _learning_store(repo_root, config)
    shutdown = ShutdownFlag()
    controller = LoopController(
        spec_dir,
        config,
        invoker=_build_invoker(config, repo_root, store, shutdown),
        gate_runner=_build_gate_runner(config, repo_root, store, shutdown),
        learnings=learnings,
        verifier=CompletionVerifier(repo_root, config.verify, config.gates),
        store=store,
        shutdown=shutdown,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        paths=paths,
        store=store,
        learnings=learnings,
        shutdown=shutdown,
        controller=controller,
    )


def _configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Warnings and errors only.")
def cli(verbose: bool, quiet: bool) -> None:
    """Foreman: unattended build loop with quality gates."""
    _configure_logging(verbose, quiet)


@cli.command("init")
@click.argument("name", required=False)
@click.option("--title", default=None, help="Title for a new task list.")
@click.option("--backend", type=click.Choice(["claude", "codex", "command"]), default=None)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def init_command(
    name: str | None, title: str | None, backend: str | None, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.agent.backend = backend  # type: ignore[assignment]
    if backend or not config_path.exists():
        save_config(config_path, config)
    (repo_root / ".foreman").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized foreman in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.agent.backend}")
    if not name:
        return

    spec_path = repo_root / "specs" / name / "SPEC.md"
    if spec_path.exists():
        click.echo(f"Task list already exists: {spec_path}")
        return
    document = new_document(spec_path, title or name.replace("-", " ").replace("_", " ").title())
    document.save()
    click.echo(f"Task list: {spec_path}")


@cli.command("run")
@click.argument("spec")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--fresh", is_flag=True, default=False, help="Discard carried loop state.")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def run_command(
    spec: str, max_iterations: int | None, fresh: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    spec_dir = _resolve_spec_dir(repo_root, spec)
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), spec_dir)
    try:
        with signal_handlers(runtime.shutdown):
            result = asyncio.run(
                runtime.controller.run(fresh=fresh, max_iterations=max_iterations)
            )
    except (TaskListError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Status: {result.status.value}")
    click.echo(f"Iterations this run: {result.iterations}")
    if result.message:
        click.echo(result.message)
    sys.exit(result.exit_code)


def _status_payload(runtime: Runtime) -> dict[str, Any]:
    document = TaskListDocument.load(runtime.paths.document)
    tasks = document.tasks
    active = tasks.in_progress()
    last = IterationJournal(runtime.paths.journal).last()
    state = LoopState.from_dict(runtime.store.get_loop())
    return {
        "spec": document.spec_name,
        "status": document.status,
        "iteration": document.iteration,
        "tasks": {
            "total": tasks.count("all"),
            "pending": tasks.count("pending"),
            "completed": tasks.count("completed"),
            "blocked": tasks.count("blocked"),
        },
        "active_task": {"id": active.id, "description": active.description} if active else None,
        "loop": state.to_dict(),
        "last_iteration": last.to_dict() if last else None,
        "gate_counters": runtime.store.get_gate_counters(),
    }


@cli.command("status")
@click.argument("spec")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def status_command(spec: str, as_json: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    spec_dir = _resolve_spec_dir(repo_root, spec)
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), spec_dir)
    try:
        payload = _status_payload(runtime)
    except TaskListError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    counts = payload["tasks"]
    click.echo(f"{payload['spec']}: {payload['status']} (iteration {payload['iteration']})")
    click.echo(
        f"Tasks: {counts['completed']}/{counts['total']} completed, "
        f"{counts['pending']} pending, {counts['blocked']} blocked"
    )
    if payload["active_task"]:
        active = payload["active_task"]
        click.echo(f"Active: {active['id']} {active['description']}")
    loop = payload["loop"]
    if loop["consecutive_failures"]:
        click.echo(f"Consecutive worker failures: {loop['consecutive_failures']}")
    for issue in loop["pending_issues"]:
        click.echo(f"Pending issue: {issue.splitlines()[0]}")


@cli.command("gates")
@click.argument("spec")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def gates_command(spec: str, config_value: str) -> None:
    """Run the declared quality gates once without touching loop state."""
    repo_root = Path.cwd().resolve()
    spec_dir = _resolve_spec_dir(repo_root, spec)
    config = load_config(_resolve_config_path(repo_root, config_value))
    try:
        document = TaskListDocument.load(SpecPaths(spec_dir).document)
    except TaskListError as exc:
        raise click.ClickException(str(exc)) from exc

    report = _build_gate_runner(config, repo_root, None).run(document.gates())
    for warning in report.warnings:
        click.echo(f"warning: {warning}")
    for result in report.results:
        if result.unsafe:
            label = "UNSAFE"
        elif result.passed:
            label = "PASS"
        else:
            label = "INFO" if result.informational else "FAIL"
        click.echo(f"{label:<6} {result.command}")
    for issue in report.all_issues():
        click.echo(issue)
    sys.exit(0 if report.passed else 1)


@cli.command("verify")
@click.argument("spec")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def verify_command(spec: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    spec_dir = _resolve_spec_dir(repo_root, spec)
    config = load_config(_resolve_config_path(repo_root, config_value))
    verifier = CompletionVerifier(repo_root, config.verify, config.gates)
    try:
        result = verifier.verify(spec_dir)
    except TaskListError as exc:
        raise click.ClickException(str(exc)) from exc

    for step in result.steps:
        label = "PASS" if step.passed else ("ADVISORY" if step.advisory else "FAIL")
        note = f" ({step.note})" if step.note else ""
        click.echo(f"{label:<8} {step.name}: {step.command or '-'}{note}")
    for reason in result.reasons:
        click.echo(reason)
    click.echo("Verified." if result.passed else "Verification failed.")
    sys.exit(0 if result.passed else 1)


@cli.command("learnings")
@click.argument("category", required=False, type=click.Choice(list(CATEGORIES)))
@click.option("--spec", "spec_name", default=None, help="Only entries from this spec.")
@click.option("--limit", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--stats", is_flag=True, default=False, help="Show counts per category.")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def learnings_command(
    category: str | None, spec_name: str | None, limit: int, stats: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = _learning_store(repo_root, config)
    if stats:
        for name, count in store.stats(spec_name).items():
            click.echo(f"{name:<18} {count}")
        return
    entries = store.query(category, limit=limit, spec=spec_name)
    if not entries:
        click.echo("No learnings recorded.")
        return
    for entry in entries:
        origin = f"{entry.spec}#{entry.iteration}" if entry.spec else "-"
        click.echo(f"[{entry.timestamp}] {entry.category} ({origin}) {entry.text}")


@cli.command("reset-context")
@click.argument("spec")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def reset_context_command(spec: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    spec_dir = _resolve_spec_dir(repo_root, spec)
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = _learning_store(repo_root, config)
    purged = store.reset(spec_dir.name)
    atomic_write_text(SpecPaths(spec_dir).context, "")
    click.echo(f"Reset learning context for {spec_dir.name}; purged {purged} harmful entries.")

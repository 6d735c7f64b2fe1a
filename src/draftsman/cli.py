from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from draftsman.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from draftsman.config import BackendName, DraftsmanConfig, load_config, save_config
from draftsman.engine import Engine, EngineDisposedError
from draftsman.planner import PlanGenerator
from draftsman.runner import SpecialistRunner
from draftsman.session import SessionStore, SessionStoreError
from draftsman.specialists import PlannerAgent, build_specialists
from draftsman.state import ExecutionState
from draftsman.tools import default_registry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    store: SessionStore
    engine: Engine
    engine_revision: int


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _build_backend(config: DraftsmanConfig, repo_root: Path) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, repo_root),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, repo_root),
        retry_policy=policy,
        event_hook=lambda event: logger.debug("backend event: %s", event),
    )


def _render_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "plan_ready":
        click.echo(f"Plan ({len(event['steps'])} steps):")
        for step in event["steps"]:
            click.echo(f"  {step['number']}. [{step['specialist']}] {step['description']}")
    elif name == "step_started":
        suffix = " (resumed)" if event.get("resumed") else ""
        click.echo(f"-> Step {event['step']}: {event['specialist']}{suffix}")
    elif name == "step_completed":
        click.echo(f"   done: step {event['step']}")
    elif name == "step_retry":
        click.echo(f"   retrying {event['specialist']}: {event['reason']}")
    elif name == "backend_retry":
        click.echo(f"   model request retry #{event['attempt']}")


def _build_engine(
    config: DraftsmanConfig,
    repo_root: Path,
    store: SessionStore,
    *,
    echo_events: bool,
) -> Engine:
    hook = _render_event if echo_events else None
    runner = SpecialistRunner(
        _build_backend(config, repo_root),
        default_registry(),
        retry_policy=RetryPolicy(
            max_retries=max(0, config.engine.max_retries),
            backoff_seconds=max(0.0, config.engine.retry_backoff_seconds),
            timeout_seconds=config.backend.timeout_seconds,
        ),
        max_iterations=config.engine.max_iterations,
        iteration_limits=config.specialists,
        loop_history_limit=config.engine.loop_history_limit,
        base_dir=(repo_root / config.project.workspace).resolve(),
        event_hook=hook,
    )
    specialists = build_specialists()
    return Engine(
        runner,
        specialists,
        PlanGenerator(runner, PlannerAgent(), specialists),
        session_store=store,
        step_max_attempts=config.engine.step_max_attempts,
        cancellation_poll_interval=config.cancellation.poll_interval_seconds,
        cancellation_timeout=config.cancellation.timeout_seconds,
        history_limit=config.engine.history_limit,
        history_keep=config.engine.history_keep,
        event_hook=hook,
    )


def _load_runtime(repo_root: Path, config_path: Path, *, echo_events: bool = False) -> Runtime:
    config = load_config(config_path)
    store = SessionStore(
        (repo_root / config.project.workspace).resolve(),
        state_dir=config.session.state_dir,
        operation_log_limit=config.session.operation_log_limit,
        archive_after_days=config.session.archive_after_days,
    )
    engine = _build_engine(config, repo_root, store, echo_events=echo_events)
    snapshot, revision = store.load_engine_snapshot()
    engine.restore(snapshot)
    expired = store.auto_archive_expired()
    if expired is not None:
        click.echo(f"Archived inactive project session {expired.session_id}.")
    return Runtime(store=store, engine=engine, engine_revision=revision)


def _close(runtime: Runtime, *, persist: bool = True) -> None:
    try:
        if persist:
            runtime.store.save_engine_snapshot(
                runtime.engine.snapshot(), expected_revision=runtime.engine_revision
            )
    except SessionStoreError as exc:
        raise click.ClickException(f"Engine state was not saved: {exc}") from exc
    finally:
        runtime.engine.dispose()


def _report(state: ExecutionState) -> None:
    if state.stage == "awaiting_user" and state.pending_interaction is not None:
        click.echo(f"Question: {state.pending_interaction.message}")
        for option in state.pending_interaction.options:
            click.echo(f"  - {option}")
        return
    if state.stage == "completed":
        click.echo(state.last_result or "Done.")
        return
    if state.stage == "error":
        prefix = "Cancelled" if state.cancelled else "Error"
        click.echo(f"{prefix}: {state.last_result}")
        return
    click.echo(f"Stage: {state.stage}")


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log diagnostics to stderr.")
def cli(verbose: bool) -> None:
    """Draftsman CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--name", "project_name", default=None)
@click.option("--config", "config_value", default="draftsman.toml", show_default=True)
def init_command(backend: str | None, project_name: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    if project_name:
        config.project.name = project_name
    save_config(config_path, config)

    store = SessionStore(
        (repo_root / config.project.workspace).resolve(),
        state_dir=config.session.state_dir,
    )
    session = store.get_current_session()
    if session is None:
        session = store.create_new_session(project_name)

    click.echo(f"Initialized Draftsman in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Session: {session.session_id}")


@cli.command("chat")
@click.argument("message")
@click.option("--config", "config_value", default="draftsman.toml", show_default=True)
def chat_command(message: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), echo_events=True
    )
    try:
        state = asyncio.run(runtime.engine.handle_message(message))
    except (SessionStoreError, EngineDisposedError) as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        _close(runtime)
    _report(state)


@cli.command("status")
@click.option("--history", "show_history", is_flag=True, default=False)
@click.option("--config", "config_value", default="draftsman.toml", show_default=True)
def status_command(show_history: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        state = runtime.engine.get_state()
        session = runtime.store.get_current_session()
    finally:
        _close(runtime, persist=False)
    payload: dict[str, Any] = {
        "stage": state.stage,
        "current_task": state.current_task,
        "pending_question": (
            state.pending_interaction.message if state.pending_interaction else None
        ),
        "last_result": state.last_result,
        "session": session.to_dict() if session else None,
    }
    if state.resume_context is not None:
        payload["resume_cycles"] = state.resume_context.cycles
    if show_history:
        payload["history"] = [entry.to_dict() for entry in state.history]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("cancel")
@click.option("--config", "config_value", default="draftsman.toml", show_default=True)
def cancel_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if not runtime.engine.is_executing():
        _close(runtime, persist=False)
        click.echo("Nothing to cancel.")
        return
    try:
        runtime.engine.cancel_current_execution()
    finally:
        _close(runtime)
    click.echo("Execution cancelled.")


@cli.command("new-project")
@click.argument("name", required=False)
@click.option("--config", "config_value", default="draftsman.toml", show_default=True)
def new_project_command(name: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        result = asyncio.run(runtime.engine.switch_project(name))
    except SessionStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        _close(runtime)
    if result.archived is not None:
        click.echo(f"Archived session {result.archived.session_id}")
    click.echo(f"Started project {result.current.project_name or '(unnamed)'}")
    click.echo(f"Session: {result.current.session_id}")


@cli.command("archives")
@click.option("--config", "config_value", default="draftsman.toml", show_default=True)
def archives_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        archives = runtime.store.list_archives()
    finally:
        _close(runtime, persist=False)
    if not archives:
        click.echo("No archived sessions.")
        return
    for record in archives:
        session = record.get("session", {})
        click.echo(
            f"{record.get('archived_at')} {record.get('reason'):<11} "
            f"{session.get('session_id')} {session.get('project_name') or '(unnamed)'}"
        )


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude"]))
@click.option("--config", "config_value", default="draftsman.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")

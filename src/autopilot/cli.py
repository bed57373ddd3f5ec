from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from autopilot.assistants import build_assistant
from autopilot.config import CONFIG_FILE_NAME, AutopilotConfig, load_config, save_config
from autopilot.context import RuntimeContext
from autopilot.engine import AutomationEngine
from autopilot.errors import AutomationError, EngineStateError, StateStoreError, TaskStateError
from autopilot.models import Session, SessionStatus
from autopilot.state import SessionStateStore
from autopilot.tasks.dependencies import DependencyValidator
from autopilot.tasks.store import TaskStore

_PROGRESS_EVENTS = {
    "task_started": "started",
    "task_retrying": "retrying",
    "task_completed": "completed",
    "task_failed": "FAILED",
    "task_skipped": "skipped",
}


@dataclass(slots=True)
class Runtime:
    workspace_root: Path
    config_path: Path
    config: AutopilotConfig
    context: RuntimeContext


def _resolve_config_path(workspace_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace_root / config_path
    return config_path.resolve()


def _load_runtime(workspace_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
        config.validate()
    except AutomationError as exc:
        raise click.ClickException(str(exc)) from exc
    logging.basicConfig(
        level=config.logging.level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    context = RuntimeContext.create(workspace_root, config)
    return Runtime(
        workspace_root=workspace_root,
        config_path=config_path,
        config=config,
        context=context,
    )


def _echo_progress(event: dict[str, Any]) -> None:
    label = _PROGRESS_EVENTS.get(event["event"])
    if label is None:
        return
    line = f"[{event['spec']}] {event['task_id']}. {event['title']}: {label}"
    if event.get("attempt"):
        line += f" (attempt {event['attempt']})"
    if event.get("error"):
        line += f" - {event['error_kind']}: {event['error']}"
    click.echo(line)


@click.group()
def cli() -> None:
    """Spec autopilot: drives checklist task plans through an assistant."""


@cli.command("init")
@click.option(
    "--assistant",
    "assistant_kind",
    type=click.Choice(["echo", "command", "file_drop"]),
    default=None,
)
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def init_command(assistant_kind: str | None, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace_root, config_value)
    try:
        config = load_config(config_path)
    except AutomationError as exc:
        raise click.ClickException(str(exc)) from exc
    if assistant_kind:
        config.assistant.kind = assistant_kind  # type: ignore[assignment]
    save_config(config_path, config)

    context = RuntimeContext.create(workspace_root, config)
    context.specs_root.mkdir(parents=True, exist_ok=True)
    (context.state_root / "state").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized autopilot in {workspace_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Specs: {context.specs_root}")
    click.echo(f"Assistant: {config.assistant.kind}")


@cli.command("validate")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def validate_command(config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    store = TaskStore(runtime.context)
    tasks = store.discover()
    report = DependencyValidator(tasks).validate()
    click.echo(f"Specs: {len(store.specs())}  Tasks: {len(tasks)}")
    try:
        report.raise_for_errors()
    except AutomationError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Dependencies OK")


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def status_command(config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    store = TaskStore(runtime.context)
    store.discover()
    engine = AutomationEngine(
        runtime.context,
        build_assistant(runtime.config.assistant, workspace_root),
        store=store,
    )
    state = SessionStateStore(runtime.context.state_root)
    try:
        payload = engine.status()
        checkpoint = state.load_session()
    except (AutomationError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    payload["checkpoint"] = checkpoint.to_dict() if checkpoint else None
    payload["history"] = state.history()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


async def _run_engine(engine: AutomationEngine, resume: bool) -> Session | None:
    # Ctrl-C cancels this coroutine; shutdown then force-stops the engine.
    try:
        return await engine.run(resume=resume)
    finally:
        await engine.shutdown()


@cli.command("run")
@click.option("--resume", is_flag=True, default=False, help="Continue an unfinished session.")
@click.option("--watch/--no-watch", default=True, show_default=True)
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def run_command(resume: bool, watch: bool, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    runtime.context.events.subscribe(_echo_progress)
    try:
        engine = AutomationEngine(
            runtime.context,
            build_assistant(runtime.config.assistant, workspace_root),
            watch_files=watch,
        )
        session = asyncio.run(_run_engine(engine, resume))
    except KeyboardInterrupt:
        click.echo("Interrupted: the in-flight task was returned to pending.", err=True)
        raise click.exceptions.Exit(130) from None
    except (AutomationError, EngineStateError, StateStoreError, TaskStateError) as exc:
        raise click.ClickException(str(exc)) from exc

    if session is None:
        return
    click.echo(f"Session: {session.id} ({session.status})")
    click.echo(
        f"Completed: {len(session.completed)}  Failed: {len(session.failed)}  "
        f"Skipped: {len(session.skipped)}"
    )
    if session.status == SessionStatus.HALTED:
        reason = f": {engine.last_error}" if engine.last_error else ""
        raise click.ClickException(f"Session halted{reason}")


@cli.command("reset")
@click.argument("task_id")
@click.option("--spec", "spec_name", default=None, help="Spec owning the task.")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def reset_command(task_id: str, spec_name: str | None, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    engine = AutomationEngine(
        runtime.context, build_assistant(runtime.config.assistant, workspace_root)
    )
    try:
        found = asyncio.run(engine.reset_task(task_id, spec_name=spec_name))
    except (AutomationError, EngineStateError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not found:
        raise click.ClickException(f"Task not found: {task_id}")
    click.echo(f"Task {task_id} reset to pending")

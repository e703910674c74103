from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskpilot.backends import (
    ClaudeCLIBackend,
    LanguageModelBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from taskpilot.commands import CommandRouter
from taskpilot.config import BackendName, TaskpilotConfig, load_config, save_config
from taskpilot.engine import WorkflowEngine
from taskpilot.state import JsonStateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: TaskpilotConfig
    state: JsonStateStore
    engine: WorkflowEngine
    router: CommandRouter


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, repo_root: Path, config: TaskpilotConfig
) -> LanguageModelBackend:
    if backend_name == "openai":
        return OpenAIBackend(model=config.agents.model)
    return ClaudeCLIBackend(working_directory=repo_root)


def _record_event(event: dict[str, Any]) -> None:
    logger.info("event %s", json.dumps(event, ensure_ascii=False, default=str))


def _build_backend(config: TaskpilotConfig, repo_root: Path) -> LanguageModelBackend | None:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root, config),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root, config),
        retry_policy=policy,
        event_hook=_record_event,
    )


def _state_dir(repo_root: Path, config: TaskpilotConfig) -> Path:
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = repo_root / state_dir
    return state_dir


def _load_runtime(repo_root: Path, config_path: Path, *, offline: bool = False) -> Runtime:
    config = load_config(config_path)
    state = JsonStateStore(_state_dir(repo_root, config))
    backend = None if offline else _build_backend(config, repo_root)
    engine = WorkflowEngine(
        state_store=state,
        backend=backend,
        config=config,
        event_hook=_record_event,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        engine=engine,
        router=CommandRouter(engine),
    )


async def _execute(runtime: Runtime, action: str, args: dict[str, Any]) -> dict[str, Any]:
    await runtime.engine.load()
    try:
        return await runtime.router.execute(action, args)
    finally:
        await runtime.engine.shutdown()


def _run(action: str, args: dict[str, Any], config_value: str) -> Any:
    ctx = click.get_current_context()
    offline = bool((ctx.find_root().obj or {}).get("offline", False))
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), offline=offline)
    envelope = asyncio.run(_execute(runtime, action, args))
    if not envelope["success"]:
        raise click.ClickException(f"{envelope['error_kind']}: {envelope['error']}")
    for warning in envelope.get("warnings", []):
        click.echo(f"warning: {warning}", err=True)
    return envelope["data"]


def _echo(payload: Any) -> None:
    if isinstance(payload, str):
        click.echo(payload)
        return
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


config_option = click.option(
    "--config", "config_value", default="taskpilot.toml", show_default=True
)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log engine activity to stderr.")
@click.option("--offline", is_flag=True, default=False, help="Skip language-model backends.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, offline: bool) -> None:
    """Dependency-aware task workflows for AI agents."""
    ctx.obj = {"offline": offline}
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "openai"]), default=None)
@click.option("--auto/--no-auto", "auto_progression", default=None)
@config_option
def init_command(backend: str | None, auto_progression: bool | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
        if config.backend.fallback == backend:
            config.backend.fallback = "openai" if backend == "claude" else "claude"
    if auto_progression is not None:
        config.workflow.auto_progression = auto_progression
    save_config(config_path, config)

    state_dir = _state_dir(repo_root, config)
    state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized taskpilot in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary} (fallback {config.backend.fallback})")
    click.echo(f"State directory: {state_dir}")


@cli.command("create")
@click.argument("content")
@click.option("--priority", type=click.Choice(["low", "medium", "high", "critical"]), default="medium")
@click.option("--tag", "tags", multiple=True)
@click.option("--summary", default=None)
@click.option("--depends-on", "dependencies", multiple=True)
@click.option("--approval-required", is_flag=True, default=False)
@config_option
def create_command(
    content: str,
    priority: str,
    tags: tuple[str, ...],
    summary: str | None,
    dependencies: tuple[str, ...],
    approval_required: bool,
    config_value: str,
) -> None:
    _echo(
        _run(
            "create",
            {
                "content": content,
                "priority": priority,
                "tags": list(tags),
                "summary": summary,
                "dependencies": list(dependencies),
                "approval_required": approval_required,
            },
            config_value,
        )
    )


@cli.command("list")
@click.option("--status", default=None)
@click.option("--workflow", "workflow_id", default=None)
@config_option
def list_command(status: str | None, workflow_id: str | None, config_value: str) -> None:
    tasks = _run("list", {"status": status, "workflow_id": workflow_id}, config_value)
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        click.echo(f"{task['id']} {task['status']:<17} {task['priority']:<8} {task['content']}")


@cli.command("show")
@click.argument("task_id")
@click.option("--summary", "as_summary", is_flag=True, default=False)
@config_option
def show_command(task_id: str, as_summary: bool, config_value: str) -> None:
    action = "summary" if as_summary else "get"
    _echo(_run(action, {"id": task_id}, config_value))


@cli.command("start")
@click.argument("task_id")
@click.option("--notes", default=None)
@config_option
def start_command(task_id: str, notes: str | None, config_value: str) -> None:
    task = _run("update", {"id": task_id, "status": "in_progress", "notes": notes}, config_value)
    if task["status"] == "blocked":
        click.echo(f"Task {task_id} is blocked: {task['blocked_reason']}")
        return
    click.echo(f"Started {task_id}")


@cli.command("complete")
@click.argument("task_id")
@click.option("--notes", default=None)
@config_option
def complete_command(task_id: str, notes: str | None, config_value: str) -> None:
    _run("complete", {"id": task_id, "notes": notes}, config_value)
    click.echo(f"Completed {task_id}")


@cli.command("cancel")
@click.argument("task_id")
@click.option("--notes", default=None)
@config_option
def cancel_command(task_id: str, notes: str | None, config_value: str) -> None:
    _run("cancel", {"id": task_id, "notes": notes}, config_value)
    click.echo(f"Cancelled {task_id}")


@cli.command("delete")
@click.argument("task_id")
@config_option
def delete_command(task_id: str, config_value: str) -> None:
    _run("delete", {"id": task_id}, config_value)
    click.echo(f"Deleted {task_id}")


@cli.command("workflow")
@click.argument("tasks", nargs=-1, required=True)
@click.option("--id", "workflow_id", default=None)
@click.option("--objective", "parent_objective", default=None)
@click.option("--analysis/--no-analysis", "smart_analysis", default=None)
@click.option(
    "--json", "as_json", is_flag=True, default=False,
    help="Treat TASKS as a single JSON array of task mappings.",
)
@config_option
def workflow_command(
    tasks: tuple[str, ...],
    workflow_id: str | None,
    parent_objective: str | None,
    smart_analysis: bool | None,
    as_json: bool,
    config_value: str,
) -> None:
    entries: list[Any] = list(tasks)
    if as_json:
        try:
            entries = json.loads(" ".join(tasks))
        except json.JSONDecodeError as exc:
            raise click.ClickException(f"Invalid workflow JSON: {exc}") from exc
    _echo(
        _run(
            "create_workflow",
            {
                "tasks": entries,
                "workflow_id": workflow_id,
                "parent_objective": parent_objective,
                "smart_analysis": smart_analysis,
            },
            config_value,
        )
    )


@cli.command("status")
@click.option("--workflow", "workflow_id", default=None)
@click.option("--all", "overall", is_flag=True, default=False, help="Show the session summary.")
@config_option
def status_command(workflow_id: str | None, overall: bool, config_value: str) -> None:
    if overall:
        _echo(_run("summary", {}, config_value))
        return
    _echo(_run("get_workflow_status", {"workflow_id": workflow_id}, config_value))


@cli.command("approve")
@click.argument("task_id")
@click.option("--notes", default=None)
@config_option
def approve_command(task_id: str, notes: str | None, config_value: str) -> None:
    task = _run("approve", {"id": task_id, "notes": notes}, config_value)
    click.echo(f"Approved {task_id} ({task['status']})")


@cli.command("checkpoint")
@click.argument("task_id")
@click.argument("note")
@click.option("--env", "environment", multiple=True, help="KEY=VALUE pairs to store.")
@config_option
def checkpoint_command(
    task_id: str, note: str, environment: tuple[str, ...], config_value: str
) -> None:
    values: dict[str, str] = {}
    for item in environment:
        key, separator, value = item.partition("=")
        if not separator or not key:
            raise click.ClickException(f"Expected KEY=VALUE, got '{item}'.")
        values[key] = value
    _echo(_run("checkpoint", {"id": task_id, "note": note, "environment": values}, config_value))


@cli.command("guidance")
@click.argument("task_id")
@config_option
def guidance_command(task_id: str, config_value: str) -> None:
    _echo(_run("request_guidance", {"id": task_id}, config_value))


@cli.command("next-steps")
@click.argument("task_id")
@config_option
def next_steps_command(task_id: str, config_value: str) -> None:
    _echo(_run("get_next_steps", {"id": task_id}, config_value))


@cli.command("auto")
@click.argument("mode", type=click.Choice(["on", "off", "toggle"]), default="toggle")
@config_option
def auto_command(mode: str, config_value: str) -> None:
    enabled = None if mode == "toggle" else mode == "on"
    result = _run("toggle_auto_progression", {"enabled": enabled}, config_value)
    state = "enabled" if result["auto_progression_enabled"] else "disabled"
    click.echo(f"Auto-progression {state}")


@cli.command("context")
@click.argument("prompt")
@click.option("--workflow", "workflow_id", default=None)
@config_option
def context_command(prompt: str, workflow_id: str | None, config_value: str) -> None:
    result = _run("get_context", {"prompt": prompt, "workflow_id": workflow_id}, config_value)
    click.echo(result["context"])


@cli.command("clear")
@click.option("--archive", is_flag=True, default=False, help="Archive the session before clearing.")
@config_option
def clear_command(archive: bool, config_value: str) -> None:
    if archive:
        archived = _run("archive_session", {}, config_value)
        if archived["archived_session_id"]:
            click.echo(f"Archived session {archived['archived_session_id']}")
    result = _run("clear", {}, config_value)
    click.echo(f"Cleared. New session: {result['session_id']}")

from __future__ import annotations

import asyncio
import json
import logging
import signal
import tomllib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from autopilot.activity import ActivityMonitor, WorkspaceWatcher
from autopilot.backends import (
    ClaudeCodeDelegate,
    CodexDelegate,
    Delegate,
    ResilientDelegate,
    RetryPolicy,
    RoutingDelegate,
    ShellDelegate,
)
from autopilot.backends.base import AgentDelegate
from autopilot.completion import build_detector
from autopilot.config import AutopilotConfig, DelegateName, load_config, save_config
from autopilot.log import configure_logging
from autopilot.orchestrator import Orchestrator
from autopilot.plan import TASK_ID_PATTERN, ParseError, PlanStore, TaskAction
from autopilot.runtime import SystemClock
from autopilot.state.leases import ExecutionLock, RunLock, StaleLease, StaleLeaseWarning
from autopilot.state.progress import ProgressError, ProgressStore
from autopilot.verifier import StepVerifier

logger = logging.getLogger(__name__)

STOP_FILE_NAME = "stop"
RUN_LOCK_NAME = "run.lock"

STARTER_PLAN = """# Plan

Tasks run top to bottom. Each task needs an `id`, an `action`
(`run_command`, `create_file` or `delegate_work`), a `description`, and the
field its action needs (`command`, `path` or `instruction`).

```json
{
  "tasks": [
    {
      "id": 1,
      "phase": "setup",
      "action": "run_command",
      "command": "mkdir -p docs",
      "description": "Create the docs directory"
    },
    {
      "id": 2,
      "phase": "setup",
      "action": "create_file",
      "path": "docs/OVERVIEW.md",
      "description": "Write a short overview of the repository layout"
    }
  ]
}
```
"""


@dataclass(slots=True)
class Runtime:
    workspace_root: Path
    config_path: Path
    config: AutopilotConfig
    state_dir: Path
    plan: PlanStore
    progress: ProgressStore
    lock: ExecutionLock
    orchestrator: Orchestrator


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path.resolve()


def _read_config(config_path: Path) -> AutopilotConfig:
    try:
        config = load_config(config_path)
        config.validate()
    except (tomllib.TOMLDecodeError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    return config


def _log_delegate_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "delegate_attempt_failed":
        logger.warning(
            "Delegate %s attempt %s failed for task %s: %s",
            event.get("delegate"),
            event.get("attempt"),
            event.get("task_id"),
            event.get("error"),
        )
    elif name == "delegate_fallback_success":
        logger.warning(
            "Task %s dispatched via fallback delegate %s",
            event.get("task_id"),
            event.get("delegate"),
        )
    else:
        logger.info("Delegate event: %s", json.dumps(event, ensure_ascii=False))


def _build_agent(
    name: DelegateName, config: AutopilotConfig, logs_dir: Path, monitor: ActivityMonitor
) -> AgentDelegate:
    options = {
        "logs_dir": logs_dir,
        "model": config.delegate.model or None,
        "extra_args": config.delegate.extra_args,
        "activity_hook": monitor.record,
    }
    if name == "codex":
        return CodexDelegate("codex", **options)
    return ClaudeCodeDelegate("claude", **options)


def _build_delegate(config: AutopilotConfig, state_dir: Path, monitor: ActivityMonitor) -> Delegate:
    logs_dir = state_dir / "logs"
    agent = ResilientDelegate(
        primary_name=config.delegate.primary,
        primary=_build_agent(config.delegate.primary, config, logs_dir, monitor),
        fallback_name=config.delegate.fallback,
        fallback=_build_agent(config.delegate.fallback, config, logs_dir, monitor),
        retry_policy=RetryPolicy(
            max_retries=max(0, int(config.delegate.max_retries)),
            backoff_seconds=max(0.0, float(config.delegate.retry_backoff_seconds)),
        ),
        event_hook=_log_delegate_event,
    )
    routes: dict[TaskAction, Delegate] = {}
    if config.delegate.run_commands_locally:
        routes[TaskAction.RUN_COMMAND] = ShellDelegate(
            timeout_seconds=config.delegate.command_timeout_seconds,
            logs_dir=logs_dir,
            activity_hook=monitor.record,
        )
    return RoutingDelegate(agent, routes)


def _load_runtime(
    workspace_root: Path,
    config_path: Path,
    *,
    confirm_stale_lease: Any = None,
    config: AutopilotConfig | None = None,
    watch: bool = False,
) -> Runtime:
    config = config or _read_config(config_path)
    state_dir = _resolve_path(workspace_root, config.project.state_dir)
    plan = PlanStore(_resolve_path(workspace_root, config.project.plan_file))
    progress = ProgressStore(_resolve_path(workspace_root, config.project.progress_file))
    lock = ExecutionLock(state_dir / "leases")
    clock = SystemClock()
    monitor = ActivityMonitor(
        clock,
        queue_size=config.activity.queue_size,
        excluded_paths=[state_dir, progress.path],
        ignore_patterns=config.activity.ignore_patterns,
        root=workspace_root,
    )
    detector = build_detector(
        config.completion.strategy,
        clock=clock,
        lock=lock,
        monitor=monitor,
        poll_interval=config.completion.poll_interval_seconds,
        timeout=config.completion.timeout_seconds,
        minimum_wait=config.completion.minimum_wait_seconds,
        idle_threshold=config.completion.idle_threshold_seconds,
    )
    watcher = None
    if watch and config.completion.strategy == "heuristic":
        watcher = WorkspaceWatcher(monitor, workspace_root)
    orchestrator = Orchestrator(
        workspace_root=workspace_root,
        lock=lock,
        delegate=_build_delegate(config, state_dir, monitor),
        detector=detector,
        verifier=StepVerifier(workspace_root),
        monitor=monitor,
        clock=clock,
        max_loops=config.loop.max_loops,
        settle_delay=config.loop.settle_delay_seconds,
        lock_poll_interval=config.lock.poll_interval_seconds,
        stale_lease_timeout=config.lock.stale_timeout_seconds,
        confirm_stale_lease=confirm_stale_lease,
        run_lock=RunLock(state_dir / RUN_LOCK_NAME),
        stop_file=state_dir / STOP_FILE_NAME,
        watcher=watcher,
        plan_source=plan,
        progress=progress,
    )
    return Runtime(
        workspace_root=workspace_root,
        config_path=config_path,
        config=config,
        state_dir=state_dir,
        plan=plan,
        progress=progress,
        lock=lock,
        orchestrator=orchestrator,
    )


@contextmanager
def _signal_handlers(orchestrator: Orchestrator) -> Iterator[None]:
    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s; stopping after the current poll", name)
        orchestrator.stop()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _confirm_with_operator(assume_yes: bool):
    def _confirm(stale: StaleLease) -> bool:
        click.echo(
            f"Task {stale.task_id} holds a lease still marked in progress "
            f"(progress status: {stale.progress_status or 'no row'})."
        )
        click.echo("A delegate may still be working on it from an earlier run.")
        if assume_yes:
            click.echo("Clearing it (--yes).")
            return True
        return click.confirm("Clear the lease and continue?", default=False)

    return _confirm


@click.group()
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
@click.option("--verbose", is_flag=True, default=False)
@click.pass_context
def cli(ctx: click.Context, config_value: str, verbose: bool) -> None:
    """Drive a coding agent through a plan, one task at a time."""

    workspace_root = Path.cwd().resolve()
    ctx.obj = {
        "workspace_root": workspace_root,
        "config_path": _resolve_path(workspace_root, config_value),
        "verbose": verbose,
    }


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--strategy", type=click.Choice(["signal", "heuristic"]), default=None)
@click.pass_obj
def init_command(obj: dict[str, Any], backend: str | None, strategy: str | None) -> None:
    workspace_root: Path = obj["workspace_root"]
    config_path: Path = obj["config_path"]
    config = _read_config(config_path)
    if backend:
        config.delegate.primary = backend  # type: ignore[assignment]
    if strategy:
        config.completion.strategy = strategy  # type: ignore[assignment]
    save_config(config_path, config)

    runtime = _load_runtime(workspace_root, config_path, config=config)
    runtime.state_dir.mkdir(parents=True, exist_ok=True)
    if not runtime.plan.path.exists():
        runtime.plan.path.write_text(STARTER_PLAN, encoding="utf-8")
        click.echo(f"Wrote starter plan: {runtime.plan.path}")
    try:
        tasks = runtime.plan.load()
    except ParseError as exc:
        raise click.ClickException(str(exc)) from exc
    added = runtime.progress.reconcile(tasks)
    runtime.progress.refresh_summary(tasks)

    click.echo(f"Initialized autopilot in {workspace_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Delegate: {config.delegate.primary} (fallback {config.delegate.fallback})")
    click.echo(f"Completion strategy: {config.completion.strategy}")
    click.echo(f"Progress: {runtime.progress.path} ({len(added)} new rows)")


@cli.command("run")
@click.option("--max-loops", type=click.IntRange(min=1), default=None)
@click.option("--strategy", type=click.Choice(["signal", "heuristic"]), default=None)
@click.option("--yes", "assume_yes", is_flag=True, default=False, help="Clear stale leases.")
@click.pass_obj
def run_command(
    obj: dict[str, Any], max_loops: int | None, strategy: str | None, assume_yes: bool
) -> None:
    workspace_root: Path = obj["workspace_root"]
    config_path: Path = obj["config_path"]
    config = _read_config(config_path)
    if max_loops is not None:
        config.loop.max_loops = max_loops
    if strategy:
        config.completion.strategy = strategy  # type: ignore[assignment]
    runtime = _load_runtime(
        workspace_root,
        config_path,
        config=config,
        confirm_stale_lease=_confirm_with_operator(assume_yes),
        watch=True,
    )
    configure_logging(config, runtime.state_dir, verbose=obj["verbose"])

    try:
        with _signal_handlers(runtime.orchestrator):
            summary = asyncio.run(runtime.orchestrator.start(runtime.plan, runtime.progress))
    except (ParseError, StaleLeaseWarning, ProgressError) as exc:
        raise click.ClickException(str(exc)) from exc

    if summary.outcome == "already_running":
        click.echo("Autopilot is already running in this workspace.")
        return
    click.echo(f"Run {summary.outcome}: {summary.iterations} iteration(s)")
    click.echo(
        f"Done: {summary.done}  Failed: {summary.failed}  "
        f"Verified complete: {summary.skipped_verified}"
    )
    if summary.outcome == "paused":
        click.echo("Loop budget reached. Run `autopilot run` again to continue.")


@cli.command("stop")
@click.pass_obj
def stop_command(obj: dict[str, Any]) -> None:
    runtime = _load_runtime(obj["workspace_root"], obj["config_path"])
    run_lock = RunLock(runtime.state_dir / RUN_LOCK_NAME)
    if run_lock.holder() is None:
        click.echo("Autopilot is not running.")
        return
    stop_file = runtime.state_dir / STOP_FILE_NAME
    stop_file.parent.mkdir(parents=True, exist_ok=True)
    stop_file.write_text("stop\n", encoding="utf-8")
    click.echo("Stop requested; the run will halt at its next poll.")


@cli.command("status")
@click.pass_obj
def status_command(obj: dict[str, Any]) -> None:
    runtime = _load_runtime(obj["workspace_root"], obj["config_path"])
    payload = runtime.orchestrator.status()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("reset")
@click.argument("task_id")
@click.pass_obj
def reset_command(obj: dict[str, Any], task_id: str) -> None:
    runtime = _load_runtime(obj["workspace_root"], obj["config_path"])
    try:
        runtime.orchestrator.reset_task(task_id)
    except ProgressError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task_id} reset to pending.")


def _validate_task_id(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    _ = ctx, param
    if value is not None and not TASK_ID_PATTERN.match(value):
        raise click.BadParameter(f"{value!r} is not a valid task id.")
    return value


@cli.command("leases")
@click.option(
    "--clear",
    "clear_id",
    default=None,
    callback=_validate_task_id,
    help="Delete the lease for this task id.",
)
@click.pass_obj
def leases_command(obj: dict[str, Any], clear_id: str | None) -> None:
    runtime = _load_runtime(obj["workspace_root"], obj["config_path"])
    if clear_id:
        runtime.lock.clear(clear_id)
        click.echo(f"Cleared lease for task {clear_id}.")
        return
    leases = runtime.lock.list_leases()
    if not leases:
        click.echo("No leases.")
        return
    for task_id, status in leases:
        click.echo(f"{task_id} {status.value}")

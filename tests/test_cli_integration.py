import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from autopilot.backends.base import Delegate, DispatchReceipt, DispatchRequest
from autopilot.cli import cli
from autopilot.config import load_config, save_config
from autopilot.plan import TaskAction
from autopilot.state.leases import ExecutionLock


class FakeDelegate(Delegate):
    name = "fake"

    def __init__(self) -> None:
        self.task_ids: list[str] = []

    async def dispatch(self, request: DispatchRequest) -> DispatchReceipt:
        task = request.task
        self.task_ids.append(task.id)
        if task.action is TaskAction.CREATE_FILE:
            target = request.workspace_root / task.payload
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text("# Overview\n", encoding="utf-8")
        request.signal_path.write_text("completed", encoding="utf-8")
        return DispatchReceipt(delegate=self.name)


@pytest.fixture(autouse=True)
def _detach_log_handlers() -> Iterator[None]:
    yield
    logger = logging.getLogger("autopilot")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _set_fast_timings(config_path: Path) -> None:
    config = load_config(config_path)
    config.completion.poll_interval_seconds = 0.05
    config.completion.minimum_wait_seconds = 0
    config.completion.timeout_seconds = 5
    config.loop.settle_delay_seconds = 0
    config.lock.poll_interval_seconds = 0.05
    save_config(config_path, config)


def _workspace(tmp_path: Path, monkeypatch) -> tuple[Path, FakeDelegate]:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    monkeypatch.chdir(workspace)
    delegate = FakeDelegate()
    monkeypatch.setattr(
        "autopilot.cli._build_delegate", lambda config, state_dir, monitor: delegate
    )
    return workspace, delegate


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    workspace, delegate = _workspace(tmp_path, monkeypatch)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output
    assert "Wrote starter plan" in init_result.output
    assert (workspace / "autopilot.toml").exists()
    assert "`pending`" in (workspace / "PROGRESS.md").read_text(encoding="utf-8")

    _set_fast_timings(workspace / "autopilot.toml")

    run_result = runner.invoke(cli, ["run"])
    assert run_result.exit_code == 0, run_result.output
    assert "Run complete: 2 iteration(s)" in run_result.output
    assert "Done: 2" in run_result.output
    assert delegate.task_ids == ["1", "2"]
    assert (workspace / "docs" / "OVERVIEW.md").exists()
    assert (workspace / ".autopilot" / "autopilot.log").exists()

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["running"] is False
    assert status["progress"]["counts"]["done"] == 2
    assert status["progress"]["next_task_id"] is None
    assert status["leases"] == {"1": "completed", "2": "completed"}

    leases_result = runner.invoke(cli, ["leases"])
    assert leases_result.exit_code == 0
    assert "1 completed" in leases_result.output

    reset_result = runner.invoke(cli, ["reset", "2"])
    assert reset_result.exit_code == 0
    assert "Task 2 reset to pending." in reset_result.output
    status = json.loads(runner.invoke(cli, ["status"]).output)
    assert status["progress"]["next_task_id"] == "2"

    clear_result = runner.invoke(cli, ["leases", "--clear", "1"])
    assert clear_result.exit_code == 0
    assert "No leases." in runner.invoke(cli, ["leases"]).output

    stop_result = runner.invoke(cli, ["stop"])
    assert stop_result.exit_code == 0
    assert "not running" in stop_result.output


def test_run_honours_loop_budget_option(tmp_path: Path, monkeypatch) -> None:
    workspace, delegate = _workspace(tmp_path, monkeypatch)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _set_fast_timings(workspace / "autopilot.toml")

    result = runner.invoke(cli, ["run", "--max-loops", "1"])

    assert result.exit_code == 0, result.output
    assert "Run paused: 1 iteration(s)" in result.output
    assert "Loop budget reached" in result.output
    assert delegate.task_ids == ["1"]


def test_stale_lease_prompt_on_run(tmp_path: Path, monkeypatch) -> None:
    workspace, delegate = _workspace(tmp_path, monkeypatch)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _set_fast_timings(workspace / "autopilot.toml")
    ExecutionLock(workspace / ".autopilot" / "leases").set_in_progress("1")

    declined = runner.invoke(cli, ["run"], input="n\n")
    assert declined.exit_code != 0
    assert "Task 1 holds a lease" in declined.output
    assert "in-progress lease" in declined.output
    assert delegate.task_ids == []

    accepted = runner.invoke(cli, ["run", "--yes"])
    assert accepted.exit_code == 0, accepted.output
    assert "Clearing it (--yes)." in accepted.output
    assert delegate.task_ids == ["1", "2"]


def test_run_reports_invalid_plan(tmp_path: Path, monkeypatch) -> None:
    workspace, delegate = _workspace(tmp_path, monkeypatch)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    (workspace / "PLAN.md").write_text("# Plan\n\nNo tasks yet.\n", encoding="utf-8")

    result = runner.invoke(cli, ["run"])

    assert result.exit_code != 0
    assert "json block" in result.output
    assert delegate.task_ids == []


def test_invalid_config_is_reported(tmp_path: Path, monkeypatch) -> None:
    workspace, _ = _workspace(tmp_path, monkeypatch)
    (workspace / "autopilot.toml").write_text(
        "[completion]\nstrategy = \"guess\"\n", encoding="utf-8"
    )

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "Invalid config" in result.output


def test_reset_unknown_task_fails(tmp_path: Path, monkeypatch) -> None:
    _workspace(tmp_path, monkeypatch)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    result = runner.invoke(cli, ["reset", "99"])

    assert result.exit_code != 0
    assert "no row" in result.output


def test_leases_clear_rejects_path_like_ids(tmp_path: Path, monkeypatch) -> None:
    workspace, _ = _workspace(tmp_path, monkeypatch)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    outside = workspace / ".autopilot" / "x.signal"
    outside.parent.mkdir(parents=True, exist_ok=True)
    outside.write_text("completed", encoding="utf-8")

    result = runner.invoke(cli, ["leases", "--clear", "../x"])

    assert result.exit_code == 2
    assert "not a valid task id" in result.output
    assert outside.exists()


def test_reset_before_first_run_adds_pending_row(tmp_path: Path, monkeypatch) -> None:
    workspace, _ = _workspace(tmp_path, monkeypatch)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    (workspace / "PROGRESS.md").unlink()

    result = runner.invoke(cli, ["reset", "1"])

    assert result.exit_code == 0, result.output
    assert "Task 1 reset to pending." in result.output
    assert "`pending`" in (workspace / "PROGRESS.md").read_text(encoding="utf-8")

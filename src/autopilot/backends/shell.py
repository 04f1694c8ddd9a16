from __future__ import annotations

import asyncio
import logging
import re
import shlex
from pathlib import Path

from autopilot.backends.base import (
    ActivityHook,
    Delegate,
    DelegateError,
    DelegateProcessError,
    DelegateTimeoutError,
    DispatchReceipt,
    DispatchRequest,
)
from autopilot.plan import TaskAction
from autopilot.runtime import CancellationToken, RunCancelledError

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
COMPLETION_SENTINEL = "completed"


class ShellDelegate(Delegate):
    """Runs `run_command` tasks locally and signals completion itself."""

    name = "shell"

    def __init__(
        self,
        *,
        timeout_seconds: float = 600.0,
        poll_interval: float = 0.5,
        logs_dir: Path | None = None,
        activity_hook: ActivityHook | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.logs_dir = logs_dir
        self.activity_hook = activity_hook

    @staticmethod
    def prepare_command(command: str) -> tuple[list[str] | str, bool]:
        command_text = command.strip()
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        if not used_shell:
            try:
                return shlex.split(command_text), False
            except ValueError:
                used_shell = True
        return command_text, used_shell

    def _notify(self, kind: str) -> None:
        if self.activity_hook is not None:
            self.activity_hook(kind, "")

    def _write_log(self, task_id: str, command: str, stdout: str, stderr: str, code: int) -> None:
        if self.logs_dir is None:
            return
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        with (self.logs_dir / f"{task_id}.log").open("a", encoding="utf-8") as handle:
            handle.write(f"$ {command}\n{stdout}{stderr}[exit {code}]\n")

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
        self._notify("process_exited")

    async def _communicate(
        self, process: asyncio.subprocess.Process, token: CancellationToken | None
    ) -> tuple[bytes, bytes]:
        """Collect output, checking `token` every poll slice until the deadline."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        output = asyncio.ensure_future(process.communicate())
        try:
            while True:
                if token is not None:
                    token.raise_if_cancelled()
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TimeoutError
                done, _ = await asyncio.wait({output}, timeout=min(self.poll_interval, remaining))
                if done:
                    return output.result()
        finally:
            if not output.done():
                output.cancel()

    async def dispatch(self, request: DispatchRequest) -> DispatchReceipt:
        task = request.task
        if task.action is not TaskAction.RUN_COMMAND:
            raise DelegateError(
                f"Shell delegate cannot run {task.action.value} tasks.",
                delegate=self.name,
                retriable=False,
            )
        if not task.payload.strip():
            raise DelegateError("Command is empty.", delegate=self.name, retriable=False)

        payload, used_shell = self.prepare_command(task.payload)
        logger.info("Running command for task %s: %s", task.id, task.payload)
        try:
            if used_shell:
                process = await asyncio.create_subprocess_shell(
                    payload,
                    cwd=str(request.workspace_root),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *payload,
                    cwd=str(request.workspace_root),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except FileNotFoundError as exc:
            raise DelegateProcessError(
                f"Command not found: {task.payload}", delegate=self.name, retriable=False
            ) from exc
        self._notify("process_started")

        try:
            stdout, stderr = await self._communicate(process, request.token)
        except TimeoutError as exc:
            await self._kill(process)
            raise DelegateTimeoutError(
                f"Command timed out after {self.timeout_seconds:.0f}s: {task.payload}",
                delegate=self.name,
            ) from exc
        except RunCancelledError:
            logger.info("Stopping command for task %s: run cancelled", task.id)
            await self._kill(process)
            raise
        self._notify("process_exited")

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")
        return_code = process.returncode if process.returncode is not None else -1
        self._write_log(task.id, task.payload, stdout_text, stderr_text, return_code)
        if return_code != 0:
            tail = (stderr_text.strip() or stdout_text.strip())[-500:]
            raise DelegateError(
                f"Command exited with code {return_code}: {tail}",
                delegate=self.name,
                exit_code=return_code,
                retriable=False,
            )

        request.signal_path.parent.mkdir(parents=True, exist_ok=True)
        request.signal_path.write_text(COMPLETION_SENTINEL, encoding="utf-8")
        return DispatchReceipt(
            delegate=self.name,
            pid=process.pid,
            details={"exit_code": return_code, "used_shell": used_shell},
        )

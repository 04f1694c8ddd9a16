from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from autopilot.plan import Task
from autopilot.runtime import CancellationToken

logger = logging.getLogger(__name__)

ActivityHook = Callable[[str, str], Any]


class DelegateError(RuntimeError):
    """Raised when work cannot be handed to, or is rejected by, a delegate."""

    def __init__(
        self,
        message: str,
        *,
        delegate: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.delegate = delegate
        self.exit_code = exit_code
        self.retriable = retriable


class DelegateTimeoutError(DelegateError):
    """Raised when a delegate exceeds its execution budget."""


class DelegateProcessError(DelegateError):
    """Raised when a delegate process cannot be launched."""


@dataclass(slots=True)
class DispatchRequest:
    task: Task
    prompt: str
    signal_path: Path
    workspace_root: Path
    token: CancellationToken | None = None


@dataclass(slots=True)
class DispatchReceipt:
    delegate: str
    pid: int | None = None
    log_path: Path | None = None
    details: dict[str, Any] = field(default_factory=dict)


class Delegate(ABC):
    name: str = "delegate"

    @abstractmethod
    async def dispatch(self, request: DispatchRequest) -> DispatchReceipt:
        """Hand the task off. Returning says nothing about completion."""


class AgentDelegate(Delegate):
    """Launches a coding-agent CLI as a detached background process.

    The agent's output is appended to a per-task log file; completion is
    left entirely to the completion detector.
    """

    def __init__(
        self,
        binary: str,
        *,
        logs_dir: Path,
        model: str | None = None,
        extra_args: list[str] | None = None,
        activity_hook: ActivityHook | None = None,
    ) -> None:
        self.binary = binary
        self.logs_dir = logs_dir
        self.model = model
        self.extra_args = list(extra_args or [])
        self.activity_hook = activity_hook
        self._watchers: set[asyncio.Task[None]] = set()

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]: ...

    def _notify(self, kind: str, detail: str = "") -> None:
        if self.activity_hook is not None:
            self.activity_hook(kind, detail)

    async def _watch(self, process: asyncio.subprocess.Process, task_id: str) -> None:
        return_code = await process.wait()
        self._notify("process_exited")
        if return_code != 0:
            logger.warning(
                "%s process for task %s exited with code %s", self.name, task_id, return_code
            )
        else:
            logger.debug("%s process for task %s exited cleanly", self.name, task_id)

    async def dispatch(self, request: DispatchRequest) -> DispatchReceipt:
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.logs_dir / f"{request.task.id}.log"
        command = self.build_command(request.prompt)
        with log_path.open("ab") as log_file:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(request.workspace_root),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise DelegateProcessError(
                    f"{self.name} binary not found: {self.binary}",
                    delegate=self.name,
                    retriable=False,
                ) from exc
            except OSError as exc:
                raise DelegateProcessError(
                    f"Could not launch {self.name}: {exc}", delegate=self.name
                ) from exc

        self._notify("process_started")
        watcher = asyncio.create_task(self._watch(process, request.task.id))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        logger.info("Dispatched task %s to %s (pid %s)", request.task.id, self.name, process.pid)
        return DispatchReceipt(delegate=self.name, pid=process.pid, log_path=log_path)

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from autopilot.runtime import CancellationToken, Clock, tick

logger = logging.getLogger(__name__)

SIGNAL_SUFFIX = ".signal"


class StaleLeaseWarning(RuntimeError):
    """Raised when a lease left in progress by an earlier run is not cleared."""

    def __init__(self, message: str, *, task_id: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class LeaseStatus(str, Enum):
    NONE = "none"
    IN_PROGRESS = "inprogress"
    COMPLETED = "completed"


@dataclass(slots=True)
class StaleLease:
    task_id: str
    progress_status: str | None = None


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class ExecutionLock:
    """Per-task durable lease used as a crash-safe mutual-exclusion signal.

    Each task owns one file under `leases_dir`. The only valid contents are
    `inprogress` and `completed`; anything else, or no file, reads as none.
    The delegate is allowed to flip its own lease to `completed`.
    """

    def __init__(self, leases_dir: Path) -> None:
        self.leases_dir = leases_dir

    def signal_path(self, task_id: str) -> Path:
        return self.leases_dir / f"{task_id}{SIGNAL_SUFFIX}"

    def set_in_progress(self, task_id: str) -> None:
        _atomic_write(self.signal_path(task_id), LeaseStatus.IN_PROGRESS.value)

    def set_completed(self, task_id: str) -> None:
        _atomic_write(self.signal_path(task_id), LeaseStatus.COMPLETED.value)

    def status(self, task_id: str) -> LeaseStatus:
        try:
            content = self.signal_path(task_id).read_text(encoding="utf-8").strip()
        except (FileNotFoundError, IsADirectoryError, UnicodeDecodeError):
            return LeaseStatus.NONE
        except OSError as exc:
            logger.debug("Unreadable lease for task %s: %s", task_id, exc)
            return LeaseStatus.NONE
        if content == LeaseStatus.IN_PROGRESS.value:
            return LeaseStatus.IN_PROGRESS
        if content == LeaseStatus.COMPLETED.value:
            return LeaseStatus.COMPLETED
        return LeaseStatus.NONE

    def list_leases(self) -> list[tuple[str, LeaseStatus]]:
        if not self.leases_dir.is_dir():
            return []
        leases: list[tuple[str, LeaseStatus]] = []
        for path in sorted(self.leases_dir.glob(f"*{SIGNAL_SUFFIX}")):
            task_id = path.name[: -len(SIGNAL_SUFFIX)]
            leases.append((task_id, self.status(task_id)))
        return leases

    def active_id(self) -> str | None:
        for task_id, status in self.list_leases():
            if status is LeaseStatus.IN_PROGRESS:
                return task_id
        return None

    def clear(self, task_id: str) -> None:
        try:
            self.signal_path(task_id).unlink()
        except FileNotFoundError:
            pass

    async def ensure_no_active_task(
        self,
        clock: Clock,
        token: CancellationToken,
        *,
        poll_interval: float,
        timeout: float,
    ) -> str | None:
        """Block until no lease reads in progress.

        On timeout the lingering lease is cleared so the loop cannot deadlock
        on a lease nobody will ever release. Returns the id that was cleared.
        """

        active = self.active_id()
        if active is None:
            return None

        logger.info("Task %s still holds an active lease; waiting for release", active)
        started = clock.monotonic()
        while clock.monotonic() - started < timeout:
            await tick(clock, token, poll_interval)
            active = self.active_id()
            if active is None:
                waited = clock.monotonic() - started
                logger.info("Active lease released after %.0fs", waited)
                return None

        active = self.active_id()
        if active is None:
            return None
        logger.warning(
            "Lease for task %s still in progress after %.0fs; clearing it to proceed",
            active,
            timeout,
        )
        self.clear(active)
        return active


class RunLock:
    """Process-level guard so only one orchestrator drives a workspace."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def holder(self) -> int | None:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            pid = int(raw)
        except ValueError:
            return None
        return pid if self._pid_alive(pid) else None

    def acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self.holder() is not None:
                    return False
                logger.warning("Removing run lock left by a process that is gone: %s", self.path)
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            self._held = True
            return True
        return False

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self._held = False

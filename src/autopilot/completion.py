"""Completion detection for work handed to an opaque delegate.

Two strategies share the same poll/minimum-wait/timeout plumbing:

* signal: wait for the delegate to flip the task's lease to `completed`.
  A timeout is a failure.
* heuristic: wait for the workspace to go quiet for `idle_threshold`
  seconds. It cannot tell "done" from "stuck", so a timeout is treated as
  an optimistic success.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal

from autopilot.activity import ActivityMonitor
from autopilot.runtime import CancellationToken, Clock, tick
from autopilot.state.leases import ExecutionLock, LeaseStatus

logger = logging.getLogger(__name__)

StrategyName = Literal["signal", "heuristic"]


class LeaseTimeoutError(RuntimeError):
    """Raised when a task's completion could not be confirmed in time."""

    def __init__(self, message: str, *, task_id: str, timeout_seconds: float) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


@dataclass(slots=True)
class CompletionResult:
    task_id: str
    elapsed_seconds: float
    assumed: bool = False
    detail: str = ""


class CompletionDetector(ABC):
    name: str = "detector"

    def __init__(
        self,
        clock: Clock,
        *,
        poll_interval: float,
        timeout: float,
        minimum_wait: float = 0.0,
    ) -> None:
        self.clock = clock
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.minimum_wait = minimum_wait

    def prepare(self, task_id: str) -> None:
        """Hook run right before polling starts."""

    async def wait_until_quiet(self, token: CancellationToken) -> bool:
        """Hook run before a task is handed to an agent. True when it is safe to go."""

        token.raise_if_cancelled()
        return True

    @abstractmethod
    def is_complete(self, task_id: str, elapsed: float) -> bool: ...

    @abstractmethod
    def on_timeout(self, task_id: str, elapsed: float) -> CompletionResult: ...

    async def wait(self, task_id: str, token: CancellationToken) -> CompletionResult:
        self.prepare(task_id)
        started = self.clock.monotonic()
        logger.info("Waiting for task %s to complete (%s strategy)", task_id, self.name)
        while True:
            token.raise_if_cancelled()
            elapsed = self.clock.monotonic() - started
            if elapsed >= self.timeout:
                return self.on_timeout(task_id, elapsed)

            await tick(self.clock, token, min(self.poll_interval, self.timeout - elapsed))
            elapsed = self.clock.monotonic() - started
            if elapsed < self.minimum_wait:
                logger.debug(
                    "Task %s within minimum wait (%.0fs / %.0fs)",
                    task_id,
                    elapsed,
                    self.minimum_wait,
                )
                continue
            if self.is_complete(task_id, elapsed):
                return CompletionResult(
                    task_id=task_id,
                    elapsed_seconds=elapsed,
                    detail=f"{self.name} confirmed completion after {elapsed:.0f}s",
                )


class SignalCompletionDetector(CompletionDetector):
    name = "signal"

    def __init__(self, clock: Clock, lock: ExecutionLock, **timings: float) -> None:
        super().__init__(clock, **timings)
        self.lock = lock

    def is_complete(self, task_id: str, elapsed: float) -> bool:
        return self.lock.status(task_id) is LeaseStatus.COMPLETED

    def on_timeout(self, task_id: str, elapsed: float) -> CompletionResult:
        raise LeaseTimeoutError(
            f"timed out after {self.timeout:.0f}s waiting for the completion signal",
            task_id=task_id,
            timeout_seconds=self.timeout,
        )


class IdleCompletionDetector(CompletionDetector):
    name = "heuristic"

    def __init__(
        self,
        clock: Clock,
        monitor: ActivityMonitor,
        *,
        idle_threshold: float,
        **timings: float,
    ) -> None:
        super().__init__(clock, **timings)
        self.monitor = monitor
        self.idle_threshold = idle_threshold

    async def wait_until_quiet(self, token: CancellationToken) -> bool:
        # A task assumed done on timeout may leave its agent still writing.
        started = self.clock.monotonic()
        while True:
            token.raise_if_cancelled()
            if self.monitor.idle_duration() >= self.idle_threshold:
                return True
            elapsed = self.clock.monotonic() - started
            if elapsed >= self.timeout:
                logger.warning(
                    "Workspace still busy after %.0fs; dispatching the next task anyway", elapsed
                )
                return False
            await tick(self.clock, token, min(self.poll_interval, self.timeout - elapsed))

    def prepare(self, task_id: str) -> None:
        self.monitor.reset_activity()

    def is_complete(self, task_id: str, elapsed: float) -> bool:
        idle = self.monitor.idle_duration()
        if idle >= self.idle_threshold:
            logger.info(
                "Task %s appears done: no workspace activity for %.0fs (elapsed %.0fs)",
                task_id,
                idle,
                elapsed,
            )
            return True
        logger.debug(
            "Task %s still active (idle %.0fs < %.0fs, elapsed %.0fs)",
            task_id,
            idle,
            self.idle_threshold,
            elapsed,
        )
        return False

    def on_timeout(self, task_id: str, elapsed: float) -> CompletionResult:
        logger.warning(
            "Task %s did not go idle within %.0fs; assuming it finished", task_id, self.timeout
        )
        return CompletionResult(
            task_id=task_id,
            elapsed_seconds=elapsed,
            assumed=True,
            detail="Assumed complete after idle timeout",
        )


def build_detector(
    strategy: StrategyName,
    *,
    clock: Clock,
    lock: ExecutionLock,
    monitor: ActivityMonitor,
    poll_interval: float,
    timeout: float,
    minimum_wait: float,
    idle_threshold: float,
) -> CompletionDetector:
    timings = {"poll_interval": poll_interval, "timeout": timeout, "minimum_wait": minimum_wait}
    if strategy == "signal":
        return SignalCompletionDetector(clock, lock, **timings)
    if strategy == "heuristic":
        return IdleCompletionDetector(clock, monitor, idle_threshold=idle_threshold, **timings)
    raise ValueError(f"Unknown completion strategy: {strategy}")

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Protocol

MAX_SLICE_SECONDS = 1.0


class RunCancelledError(RuntimeError):
    """Raised from a suspension point once cancellation has been requested."""


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class CancellationToken:
    """Shared stop flag checked on every poll tick.

    When bound to a stop file, the presence of that file counts as a
    cancellation request too, so a separate `autopilot stop` process can
    halt a running loop.
    """

    def __init__(self, stop_file: Path | None = None) -> None:
        self.stop_file = stop_file
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._cancelled:
            self.reason = reason
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self.stop_file is not None and self.stop_file.exists():
            self.cancel("stop requested via stop file")
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(self.reason or "cancelled")

    def clear_stop_file(self) -> None:
        if self.stop_file is None:
            return
        try:
            self.stop_file.unlink()
        except FileNotFoundError:
            pass


async def tick(clock: Clock, token: CancellationToken, seconds: float) -> None:
    """Sleep for `seconds`, re-checking cancellation before and after every slice."""

    token.raise_if_cancelled()
    remaining = max(0.0, float(seconds))
    while remaining > 0:
        step = min(MAX_SLICE_SECONDS, remaining)
        await clock.sleep(step)
        remaining -= step
        token.raise_if_cancelled()

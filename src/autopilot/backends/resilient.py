from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from autopilot.backends.base import Delegate, DelegateError, DispatchReceipt, DispatchRequest

DelegateEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5


class ResilientDelegate(Delegate):
    """Wraps primary/fallback delegates with retry and failover on launch errors."""

    def __init__(
        self,
        primary_name: str,
        primary: Delegate,
        fallback_name: str,
        fallback: Delegate,
        retry_policy: RetryPolicy,
        event_hook: DelegateEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary = primary
        self.fallback_name = fallback_name
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.name = primary_name

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def dispatch(self, request: DispatchRequest) -> DispatchReceipt:
        attempts: list[tuple[str, Delegate]] = [(self.primary_name, self.primary)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback))

        errors: list[str] = []
        for delegate_name, delegate in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "delegate_retry",
                            "delegate": delegate_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "task_id": request.task.id,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    receipt = await delegate.dispatch(request)
                except DelegateError as exc:
                    errors.append(f"{delegate_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "delegate_attempt_failed",
                            "delegate": delegate_name,
                            "attempt": attempt,
                            "task_id": request.task.id,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if delegate_name != self.primary_name:
                    self._emit(
                        {
                            "event": "delegate_fallback_success",
                            "delegate": delegate_name,
                            "attempt": attempt,
                            "task_id": request.task.id,
                        }
                    )
                return receipt

        summary = "; ".join(errors[-6:])
        raise DelegateError(
            f"All delegates failed to accept task {request.task.id}. {summary}",
            retriable=False,
        )

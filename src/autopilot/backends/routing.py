from __future__ import annotations

from autopilot.backends.base import Delegate, DispatchReceipt, DispatchRequest
from autopilot.plan import TaskAction


class RoutingDelegate(Delegate):
    """Sends each task to the delegate registered for its action kind."""

    name = "router"

    def __init__(self, default: Delegate, routes: dict[TaskAction, Delegate] | None = None) -> None:
        self.default = default
        self.routes = dict(routes or {})

    def delegate_for(self, action: TaskAction) -> Delegate:
        return self.routes.get(action, self.default)

    async def dispatch(self, request: DispatchRequest) -> DispatchReceipt:
        return await self.delegate_for(request.task.action).dispatch(request)

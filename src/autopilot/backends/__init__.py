from autopilot.backends.base import (
    AgentDelegate,
    Delegate,
    DelegateError,
    DelegateProcessError,
    DelegateTimeoutError,
    DispatchReceipt,
    DispatchRequest,
)
from autopilot.backends.claude import ClaudeCodeDelegate
from autopilot.backends.codex import CodexDelegate
from autopilot.backends.resilient import ResilientDelegate, RetryPolicy
from autopilot.backends.routing import RoutingDelegate
from autopilot.backends.shell import ShellDelegate

__all__ = [
    "AgentDelegate",
    "ClaudeCodeDelegate",
    "CodexDelegate",
    "Delegate",
    "DelegateError",
    "DelegateProcessError",
    "DelegateTimeoutError",
    "DispatchReceipt",
    "DispatchRequest",
    "ResilientDelegate",
    "RetryPolicy",
    "RoutingDelegate",
    "ShellDelegate",
]

from autopilot.state.leases import ExecutionLock, LeaseStatus, RunLock, StaleLease
from autopilot.state.progress import ProgressEntry, ProgressStore, ProgressSummary, TaskStatus

__all__ = [
    "ExecutionLock",
    "LeaseStatus",
    "ProgressEntry",
    "ProgressStore",
    "ProgressSummary",
    "RunLock",
    "StaleLease",
    "TaskStatus",
]

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from autopilot.activity import ActivityMonitor, WorkspaceWatcher
from autopilot.backends.base import Delegate, DelegateError, DispatchRequest
from autopilot.completion import CompletionDetector, LeaseTimeoutError
from autopilot.plan import ParseError, PlanStore, Task, TaskAction
from autopilot.prompts import build_prompt
from autopilot.runtime import CancellationToken, Clock, RunCancelledError, SystemClock, tick
from autopilot.state.leases import (
    ExecutionLock,
    LeaseStatus,
    RunLock,
    StaleLease,
    StaleLeaseWarning,
)
from autopilot.state.progress import (
    SETTLED_STATUSES,
    ProgressEntry,
    ProgressError,
    ProgressStore,
    TaskStatus,
)
from autopilot.verifier import StepVerifier

logger = logging.getLogger(__name__)

ConfirmStaleLease = Callable[[StaleLease], bool]

VERIFIED_NOTE = "Verified already complete"
TASK_ERRORS = (DelegateError, LeaseTimeoutError, ProgressError, OSError)
AGENT_ACTIONS = frozenset({TaskAction.CREATE_FILE, TaskAction.DELEGATE_WORK})


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class OrchestratorState(str, Enum):
    IDLE = "idle"
    SCHEDULING = "scheduling"
    SKIPPING = "skipping"
    DISPATCHING = "dispatching"
    AWAITING_COMPLETION = "awaiting_completion"
    RECORDING = "recording"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETE = "complete"


class TaskOutcome(str, Enum):
    DONE = "done"
    FAILED = "failed"
    VERIFIED = "verified"


@dataclass(slots=True)
class RunSummary:
    outcome: str
    iterations: int = 0
    done: int = 0
    failed: int = 0
    skipped_verified: int = 0
    started_at: str = ""
    ended_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def next_eligible_task(tasks: list[Task], entries: dict[str, ProgressEntry]) -> Task | None:
    """Lowest-order task that is neither done nor skipped.

    Always scans from the start so that an earlier task that was missed is
    picked up again even when later ones are already finished.
    """

    for task in tasks:
        entry = entries.get(task.id)
        if entry is None or entry.status not in SETTLED_STATUSES:
            return task
    return None


class Orchestrator:
    def __init__(
        self,
        *,
        workspace_root: Path,
        lock: ExecutionLock,
        delegate: Delegate,
        detector: CompletionDetector,
        verifier: StepVerifier,
        monitor: ActivityMonitor,
        clock: Clock | None = None,
        max_loops: int = 2,
        settle_delay: float = 3.0,
        lock_poll_interval: float = 5.0,
        stale_lease_timeout: float = 600.0,
        confirm_stale_lease: ConfirmStaleLease | None = None,
        run_lock: RunLock | None = None,
        stop_file: Path | None = None,
        watcher: WorkspaceWatcher | None = None,
        plan_source: PlanStore | None = None,
        progress: ProgressStore | None = None,
    ) -> None:
        self.workspace_root = workspace_root
        self.lock = lock
        self.delegate = delegate
        self.detector = detector
        self.verifier = verifier
        self.monitor = monitor
        self.clock = clock or SystemClock()
        self.max_loops = max_loops
        self.settle_delay = settle_delay
        self.lock_poll_interval = lock_poll_interval
        self.stale_lease_timeout = stale_lease_timeout
        self.confirm_stale_lease = confirm_stale_lease
        self.run_lock = run_lock
        self.stop_file = stop_file
        self.watcher = watcher
        self.plan_source = plan_source
        self.progress = progress
        self.state = OrchestratorState.IDLE
        self.current_task_id: str | None = None
        self._running = False
        self._token: CancellationToken | None = None

    @property
    def running(self) -> bool:
        return self._running

    def _transition(self, state: OrchestratorState) -> None:
        if state is not self.state:
            logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def _record(
        self, progress: ProgressStore, task: Task, status: TaskStatus, notes: str = ""
    ) -> None:
        try:
            progress.update(task.id, status, notes, task=task)
        except (ProgressError, OSError) as exc:
            logger.error("Could not record %s for task %s: %s", status.value, task.id, exc)

    def _recover_stale_leases(self, progress: ProgressStore) -> None:
        while (active := self.lock.active_id()) is not None:
            entry = progress.get(active)
            stale = StaleLease(
                task_id=active,
                progress_status=entry.status.value if entry is not None else None,
            )
            logger.warning(
                "Task %s holds a lease left in progress by an earlier run (progress: %s)",
                active,
                stale.progress_status or "no row",
            )
            confirmed = False
            if self.confirm_stale_lease is not None:
                confirmed = bool(self.confirm_stale_lease(stale))
            if not confirmed:
                raise StaleLeaseWarning(
                    f"Task {active} still holds an in-progress lease from an earlier run. "
                    "Confirm clearing it once no delegate is working on it.",
                    task_id=active,
                )
            self.lock.clear(active)
            logger.warning("Stale lease for task %s cleared by operator", active)

    async def start(self, plan_source: PlanStore, progress: ProgressStore) -> RunSummary:
        if self._running:
            logger.warning("Orchestrator is already running; start ignored")
            return RunSummary(outcome="already_running")
        if self.run_lock is not None and not self.run_lock.acquire():
            logger.warning(
                "Another orchestrator (pid %s) is driving this workspace; start ignored",
                self.run_lock.holder(),
            )
            return RunSummary(outcome="already_running")

        self._running = True
        self.plan_source = plan_source
        self.progress = progress
        token = CancellationToken(stop_file=self.stop_file)
        token.clear_stop_file()
        self._token = token
        summary = RunSummary(outcome="complete", started_at=_utcnow_iso())
        try:
            tasks = plan_source.load()
            logger.info("Loaded %d tasks from %s", len(tasks), plan_source.path.name)
            self._recover_stale_leases(progress)
            added = progress.reconcile(tasks)
            if added:
                logger.info("Added %d new task rows to %s", len(added), progress.path.name)
            progress.refresh_summary(tasks)
            if self.watcher is not None:
                self.watcher.start()
            await self._run_loop(tasks, progress, token, summary)
        finally:
            if self.watcher is not None:
                self.watcher.stop()
            if self.run_lock is not None:
                self.run_lock.release()
            self.current_task_id = None
            self._running = False
            self._token = None
            summary.ended_at = _utcnow_iso()
        return summary

    async def _run_loop(
        self,
        tasks: list[Task],
        progress: ProgressStore,
        token: CancellationToken,
        summary: RunSummary,
    ) -> None:
        while True:
            if token.cancelled:
                logger.info("Run cancelled: %s", token.reason)
                summary.outcome = "cancelled"
                self._transition(OrchestratorState.CANCELLED)
                return
            self._transition(OrchestratorState.SCHEDULING)
            task = next_eligible_task(tasks, progress.read())
            if task is None:
                logger.info("All tasks complete")
                summary.outcome = "complete"
                self._transition(OrchestratorState.COMPLETE)
                return
            if summary.iterations >= self.max_loops:
                logger.info(
                    "Reached the loop budget (%d); pausing. Start again to continue.",
                    self.max_loops,
                )
                summary.outcome = "paused"
                self._transition(OrchestratorState.PAUSED)
                return

            summary.iterations += 1
            logger.info(
                "Loop %d/%d: task %s [%s] %s",
                summary.iterations,
                self.max_loops,
                task.id,
                task.action.value,
                task.description,
            )
            try:
                outcome = await self._process(task, progress, token)
            except RunCancelledError as exc:
                logger.info("Run cancelled while working on task %s: %s", task.id, exc)
                summary.outcome = "cancelled"
                self._transition(OrchestratorState.CANCELLED)
                return
            finally:
                self.current_task_id = None

            if outcome is TaskOutcome.DONE:
                summary.done += 1
            elif outcome is TaskOutcome.FAILED:
                summary.failed += 1
            else:
                summary.skipped_verified += 1
            counts = progress.refresh_summary(tasks)
            logger.info(
                "Progress: %d done, %d failed, %d pending",
                counts.count(TaskStatus.DONE),
                counts.count(TaskStatus.FAILED),
                counts.count(TaskStatus.PENDING),
            )

            if outcome is not TaskOutcome.VERIFIED and summary.iterations < self.max_loops:
                try:
                    await tick(self.clock, token, self.settle_delay)
                except RunCancelledError:
                    continue

    def _release_lease(self, task_id: str) -> None:
        try:
            self.lock.set_completed(task_id)
        except OSError as exc:
            logger.error("Could not release the lease of task %s: %s", task_id, exc)

    def _fail(self, progress: ProgressStore, task: Task, exc: BaseException) -> TaskOutcome:
        self._transition(OrchestratorState.RECORDING)
        self._release_lease(task.id)
        self._record(progress, task, TaskStatus.FAILED, str(exc) or type(exc).__name__)
        return TaskOutcome.FAILED

    def _already_satisfied(self, task: Task) -> str | None:
        try:
            verification = self.verifier.check(task)
        except Exception:
            logger.exception("Verification for task %s raised; dispatching anyway", task.id)
            return None
        return verification.evidence if verification.satisfied else None

    async def _process(
        self, task: Task, progress: ProgressStore, token: CancellationToken
    ) -> TaskOutcome:
        evidence = self._already_satisfied(task)
        if evidence is not None:
            self._transition(OrchestratorState.SKIPPING)
            self._record(progress, task, TaskStatus.DONE, f"{VERIFIED_NOTE}: {evidence}")
            logger.info("Task %s already complete; skipped dispatch", task.id)
            return TaskOutcome.VERIFIED

        self._transition(OrchestratorState.DISPATCHING)
        cleared = await self.lock.ensure_no_active_task(
            self.clock,
            token,
            poll_interval=self.lock_poll_interval,
            timeout=self.stale_lease_timeout,
        )
        if cleared is not None:
            logger.warning("Proceeding after force-clearing the lease of task %s", cleared)
        if task.action in AGENT_ACTIONS:
            await self.detector.wait_until_quiet(token)

        self.lock.set_in_progress(task.id)
        self.current_task_id = task.id
        try:
            progress.update(task.id, TaskStatus.IN_PROGRESS, "", task=task)
            self.monitor.reset_activity()
            request = DispatchRequest(
                task=task,
                prompt=build_prompt(task, self.workspace_root, self.lock.signal_path(task.id)),
                signal_path=self.lock.signal_path(task.id),
                workspace_root=self.workspace_root,
                token=token,
            )
            receipt = await self.delegate.dispatch(request)
            logger.debug("Task %s accepted by %s", task.id, receipt.delegate)
            self._transition(OrchestratorState.AWAITING_COMPLETION)
            result = await self.detector.wait(task.id, token)
        except RunCancelledError:
            raise
        except TASK_ERRORS as exc:
            logger.error("Task %s failed: %s", task.id, exc)
            return self._fail(progress, task, exc)
        except Exception as exc:
            logger.exception("Task %s failed with an unexpected error", task.id)
            return self._fail(progress, task, exc)

        self._transition(OrchestratorState.RECORDING)
        self._release_lease(task.id)
        self._record(progress, task, TaskStatus.DONE, result.detail if result.assumed else "")
        logger.info("Task %s completed in %.0fs", task.id, result.elapsed_seconds)
        return TaskOutcome.DONE

    def stop(self) -> bool:
        if not self._running or self._token is None:
            logger.info("Orchestrator is not running")
            return False
        self._token.cancel("stopped by operator")
        logger.info("Stop requested")
        return True

    def status(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "running": self._running,
            "state": self.state.value,
            "current_task_id": self.current_task_id,
            "leases": {task_id: status.value for task_id, status in self.lock.list_leases()},
            "active_lease": self.lock.active_id(),
        }
        if self.run_lock is not None and not self._running:
            payload["running"] = self.run_lock.holder() is not None
        if self.progress is None:
            return payload

        tasks: list[Task] | None = None
        if self.plan_source is not None:
            try:
                tasks = self.plan_source.load()
            except ParseError as exc:
                payload["plan_error"] = str(exc)
        payload["progress"] = self.progress.summarize(tasks).to_dict()
        return payload

    def reset_task(self, task_id: str) -> ProgressEntry:
        if self.progress is None:
            raise ProgressError("No progress record is configured.")
        tasks: list[Task] | None = None
        if self.plan_source is not None:
            try:
                tasks = self.plan_source.load()
            except ParseError:
                tasks = None
        planned = next((task for task in tasks or [] if task.id == task_id), None)
        entry = self.progress.reset(task_id, task=planned)
        if self.lock.status(task_id) is LeaseStatus.COMPLETED:
            self.lock.clear(task_id)
        self.progress.refresh_summary(tasks)
        logger.info("Task %s reset to pending", task_id)
        return entry

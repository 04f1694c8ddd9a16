"""Workspace activity tracking for the idle-based completion heuristic.

Filesystem events arrive on the watchdog observer thread and are pushed onto
a bounded queue; the monitor drains that queue whenever idle time is asked
for, so nothing else needs to share state with the observer thread.
"""

from __future__ import annotations

import fnmatch
import logging
import queue
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from autopilot.runtime import Clock, SystemClock

logger = logging.getLogger(__name__)

ACTIVITY_KINDS = {
    "created",
    "modified",
    "deleted",
    "moved",
    "process_started",
    "process_exited",
}


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    kind: str
    path: str
    observed_at: float


class ActivityMonitor:
    def __init__(
        self,
        clock: Clock | None = None,
        *,
        queue_size: int = 1024,
        excluded_paths: list[Path] | None = None,
        ignore_patterns: list[str] | None = None,
        root: Path | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.root = root.resolve() if root is not None else None
        self.excluded_paths = [path.resolve() for path in (excluded_paths or [])]
        self.ignore_patterns = list(ignore_patterns or [])
        self._events: queue.Queue[ActivityEvent] = queue.Queue(maxsize=max(1, queue_size))
        self._last_activity = self.clock.monotonic()

    def _relative(self, path: Path) -> str:
        if self.root is not None:
            try:
                return path.relative_to(self.root).as_posix()
            except ValueError:
                pass
        return path.as_posix()

    def is_ignored(self, raw_path: str) -> bool:
        if not raw_path:
            return False
        path = Path(raw_path).resolve()
        for excluded in self.excluded_paths:
            if path == excluded or excluded in path.parents:
                return True
        relative = self._relative(path)
        return any(
            fnmatch.fnmatch(relative, pattern) or fnmatch.fnmatch(path.name, pattern)
            for pattern in self.ignore_patterns
        )

    def record(self, kind: str, path: str = "") -> bool:
        """Queue an activity event. Returns False when the event was filtered out."""

        if kind not in ACTIVITY_KINDS:
            raise ValueError(f"Unknown activity kind: {kind}")
        if path and self.is_ignored(path):
            return False
        event = ActivityEvent(kind=kind, path=path, observed_at=self.clock.monotonic())
        while True:
            try:
                self._events.put_nowait(event)
                return True
            except queue.Full:
                self._drain_one()

    def _drain_one(self) -> None:
        try:
            event = self._events.get_nowait()
        except queue.Empty:
            return
        self._last_activity = max(self._last_activity, event.observed_at)

    def _drain(self) -> int:
        drained = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return drained
            self._last_activity = max(self._last_activity, event.observed_at)
            drained += 1

    @property
    def last_activity_time(self) -> float:
        self._drain()
        return self._last_activity

    def idle_duration(self) -> float:
        self._drain()
        return max(0.0, self.clock.monotonic() - self._last_activity)

    def reset_activity(self) -> None:
        self._drain()
        self._last_activity = self.clock.monotonic()


class _ActivityHandler(FileSystemEventHandler):
    def __init__(self, monitor: ActivityMonitor) -> None:
        super().__init__()
        self._monitor = monitor

    def _handle(self, kind: str, event: FileSystemEvent) -> None:
        src = event.src_path
        if isinstance(src, bytes):
            src = src.decode("utf-8", errors="replace")
        dest = getattr(event, "dest_path", "")
        if isinstance(dest, bytes):
            dest = dest.decode("utf-8", errors="replace")
        # Moves out of an ignored path still count via their destination.
        if self._monitor.record(kind, src) or not dest:
            return
        self._monitor.record(kind, dest)

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle("created", event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle("modified", event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle("deleted", event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle("moved", event)


class WorkspaceWatcher:
    """Feeds filesystem events under `root` into an ActivityMonitor."""

    def __init__(self, monitor: ActivityMonitor, root: Path) -> None:
        self.monitor = monitor
        self.root = root
        self._observer: Observer | None = None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        observer.daemon = True
        observer.schedule(_ActivityHandler(self.monitor), str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.debug("Watching %s for workspace activity", self.root)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None
        logger.debug("Stopped watching %s", self.root)

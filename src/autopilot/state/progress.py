"""Durable, human-editable progress record.

The record is a Markdown table keyed by task id. Every read goes back to
disk because the document may be edited by hand between iterations.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from autopilot.plan import Task

logger = logging.getLogger(__name__)

CELL_SPLIT_PATTERN = re.compile(r"(?<!\\)\|")
TABLE_HEADER = "| ID | Phase | Task | Status | Timestamp | Notes |"
TABLE_SEPARATOR = "|----|-------|------|--------|-----------|-------|"
SUMMARY_HEADING = "## Quick Status"
TASKS_HEADING = "## Tasks"
NOT_IN_PLAN_NOTE = "Task not found in plan"


class ProgressError(RuntimeError):
    """Raised for updates the progress record cannot accept."""


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.SKIPPED}


ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.DONE, TaskStatus.SKIPPED},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.DONE,
        TaskStatus.FAILED,
        TaskStatus.SKIPPED,
    },
    TaskStatus.FAILED: {TaskStatus.IN_PROGRESS, TaskStatus.DONE, TaskStatus.SKIPPED},
    TaskStatus.DONE: set(),
    TaskStatus.SKIPPED: set(),
}

SETTLED_STATUSES = {TaskStatus.DONE, TaskStatus.SKIPPED}


@dataclass(slots=True)
class ProgressEntry:
    task_id: str
    status: TaskStatus
    timestamp: str = ""
    notes: str = ""
    phase: str = ""
    label: str = ""


@dataclass(slots=True)
class ProgressSummary:
    total: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    next_task_id: str | None = None
    last_completed_id: str | None = None

    def count(self, status: TaskStatus) -> int:
        return self.counts.get(status.value, 0)

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "counts": dict(self.counts),
            "next_task_id": self.next_task_id,
            "last_completed_id": self.last_completed_id,
        }


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")


def _escape_cell(value: str) -> str:
    flattened = " ".join(str(value).split())
    return flattened.replace("|", "\\|")


def _unescape_cell(value: str) -> str:
    return value.strip().replace("\\|", "|")


def _split_row(line: str) -> list[str] | None:
    stripped = line.strip()
    if not (stripped.startswith("|") and stripped.endswith("|")) or len(stripped) < 2:
        return None
    parts = CELL_SPLIT_PATTERN.split(stripped)
    return [_unescape_cell(part) for part in parts[1:-1]]


def _parse_status(raw: str) -> TaskStatus | None:
    try:
        return TaskStatus(raw.strip().strip("`").strip().lower())
    except ValueError:
        return None


def parse_row(line: str) -> ProgressEntry | None:
    cells = _split_row(line)
    if cells is None or len(cells) != 6:
        return None
    task_id = cells[0]
    if not task_id or task_id.upper() == "ID" or set(task_id) <= {"-", ":"}:
        return None
    status = _parse_status(cells[3])
    if status is None:
        logger.debug("Skipping progress row with unknown status: %s", line.strip())
        return None
    return ProgressEntry(
        task_id=task_id,
        status=status,
        timestamp=cells[4],
        notes=cells[5],
        phase=cells[1],
        label=cells[2],
    )


def render_row(entry: ProgressEntry) -> str:
    return (
        f"| {_escape_cell(entry.task_id)} | {_escape_cell(entry.phase)} | "
        f"{_escape_cell(entry.label)} | `{entry.status.value}` | "
        f"{_escape_cell(entry.timestamp)} | {_escape_cell(entry.notes)} |"
    )


def entry_for_task(task: Task) -> ProgressEntry:
    return ProgressEntry(
        task_id=task.id,
        status=TaskStatus.PENDING,
        phase=task.phase,
        label=f"`{task.action.value}` {task.description}",
    )


def _render_summary_block(summary: ProgressSummary) -> list[str]:
    return [
        SUMMARY_HEADING,
        "",
        "| Status | Count |",
        "|--------|-------|",
        f"| Total | {summary.total} |",
        f"| Done | {summary.count(TaskStatus.DONE)} |",
        f"| In Progress | {summary.count(TaskStatus.IN_PROGRESS)} |",
        f"| Failed | {summary.count(TaskStatus.FAILED)} |",
        f"| Skipped | {summary.count(TaskStatus.SKIPPED)} |",
        f"| Pending | {summary.count(TaskStatus.PENDING)} |",
        "",
        f"**Current Task:** {summary.next_task_id or 'All complete'}",
        f"**Last Completed Task:** {summary.last_completed_id or '-'}",
        "",
    ]


def render_document(entries: Iterable[ProgressEntry]) -> str:
    rows = [render_row(entry) for entry in entries]
    lines = [
        "# Progress",
        "",
        *_render_summary_block(ProgressSummary()),
        TASKS_HEADING,
        "",
        TABLE_HEADER,
        TABLE_SEPARATOR,
        *rows,
        "",
    ]
    return "\n".join(lines)


class ProgressStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def _read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        return self.path.read_text(encoding="utf-8").splitlines()

    def _write_lines(self, lines: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = "\n".join(lines).rstrip("\n") + "\n"
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    @staticmethod
    def _index_rows(lines: list[str]) -> dict[str, tuple[int, ProgressEntry]]:
        rows: dict[str, tuple[int, ProgressEntry]] = {}
        for index, line in enumerate(lines):
            entry = parse_row(line)
            if entry is None:
                continue
            if entry.task_id in rows:
                logger.warning("Duplicate progress row for task %s ignored", entry.task_id)
                continue
            rows[entry.task_id] = (index, entry)
        return rows

    @staticmethod
    def _table_end(lines: list[str]) -> int | None:
        header_index = None
        for index, line in enumerate(lines):
            cells = _split_row(line)
            if cells and len(cells) == 6 and cells[0].upper() == "ID":
                header_index = index
                break
        if header_index is None:
            return None
        end = header_index + 1
        while end < len(lines) and lines[end].strip().startswith("|"):
            end += 1
        return end

    def _append_rows(self, lines: list[str], entries: list[ProgressEntry]) -> list[str]:
        if not lines:
            return render_document(entries).splitlines()
        end = self._table_end(lines)
        rendered = [render_row(entry) for entry in entries]
        if end is None:
            return [*lines, "", TASKS_HEADING, "", TABLE_HEADER, TABLE_SEPARATOR, *rendered]
        return [*lines[:end], *rendered, *lines[end:]]

    def read(self) -> dict[str, ProgressEntry]:
        rows = self._index_rows(self._read_lines())
        return {task_id: entry for task_id, (_, entry) in rows.items()}

    def get(self, task_id: str) -> ProgressEntry | None:
        return self.read().get(task_id)

    def update(
        self,
        task_id: str,
        status: TaskStatus,
        notes: str = "",
        *,
        task: Task | None = None,
    ) -> ProgressEntry:
        lines = self._read_lines()
        rows = self._index_rows(lines)
        if task_id not in rows:
            if task is None:
                raise ProgressError(f"Task {task_id} has no row in {self.path.name}.")
            lines = self._append_rows(lines, [entry_for_task(task)])
            rows = self._index_rows(lines)

        index, current = rows[task_id]
        if status not in ALLOWED_TRANSITIONS[current.status]:
            raise ProgressError(
                f"Task {task_id} cannot move from {current.status.value} to {status.value}."
            )
        current.status = status
        current.notes = notes
        current.timestamp = _timestamp() if status.terminal else ""
        lines[index] = render_row(current)
        self._write_lines(lines)
        return current

    def reset(self, task_id: str, *, task: Task | None = None) -> ProgressEntry:
        lines = self._read_lines()
        rows = self._index_rows(lines)
        if task_id not in rows:
            if task is None:
                raise ProgressError(f"Task {task_id} has no row in {self.path.name}.")
            entry = entry_for_task(task)
            self._write_lines(self._append_rows(lines, [entry]))
            return entry
        index, current = rows[task_id]
        current.status = TaskStatus.PENDING
        current.notes = ""
        current.timestamp = ""
        lines[index] = render_row(current)
        self._write_lines(lines)
        return current

    def reconcile(self, tasks: list[Task]) -> list[str]:
        """Add rows for new plan tasks and retire rows the plan no longer has.

        Returns the ids of the rows that were added.
        """

        lines = self._read_lines()
        rows = self._index_rows(lines)
        plan_ids = {task.id for task in tasks}

        changed = False
        for task_id, (index, entry) in rows.items():
            if task_id in plan_ids or entry.status in SETTLED_STATUSES:
                continue
            logger.warning("Task %s is in the progress record but not in the plan", task_id)
            entry.status = TaskStatus.SKIPPED
            entry.notes = NOT_IN_PLAN_NOTE
            entry.timestamp = _timestamp()
            lines[index] = render_row(entry)
            changed = True

        missing = [entry_for_task(task) for task in tasks if task.id not in rows]
        if missing:
            lines = self._append_rows(lines, missing)
            changed = True
        if changed:
            self._write_lines(lines)
        return [entry.task_id for entry in missing]

    def summarize(self, tasks: list[Task] | None = None) -> ProgressSummary:
        entries = self.read()
        ordered_ids = [task.id for task in tasks] if tasks is not None else list(entries)
        counts = {status.value: 0 for status in TaskStatus}
        for task_id in ordered_ids:
            entry = entries.get(task_id)
            status = entry.status if entry is not None else TaskStatus.PENDING
            counts[status.value] += 1

        next_task_id = None
        for task_id in ordered_ids:
            entry = entries.get(task_id)
            if entry is None or entry.status not in SETTLED_STATUSES:
                next_task_id = task_id
                break

        last_completed_id = None
        for task_id in ordered_ids:
            entry = entries.get(task_id)
            if entry is not None and entry.status is TaskStatus.DONE:
                last_completed_id = task_id

        return ProgressSummary(
            total=len(ordered_ids),
            counts=counts,
            next_task_id=next_task_id,
            last_completed_id=last_completed_id,
        )

    def refresh_summary(self, tasks: list[Task] | None = None) -> ProgressSummary:
        summary = self.summarize(tasks)
        lines = self._read_lines()
        if not lines:
            return summary
        try:
            start = next(i for i, line in enumerate(lines) if line.strip() == SUMMARY_HEADING)
        except StopIteration:
            return summary
        end = start + 1
        while end < len(lines) and not lines[end].startswith("## "):
            end += 1
        lines[start:end] = _render_summary_block(summary)
        self._write_lines(lines)
        return summary

"""Declarative plan loading.

A plan is an ordered, immutable list of tasks read once per run. It lives
either in a Markdown document with a fenced ```json block or in a plain
JSON file.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

JSON_BLOCK_PATTERN = re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL)
TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ParseError(ValueError):
    """Raised when the plan cannot be loaded in full."""

    def __init__(self, message: str, *, source: Path | None = None, task_index: int | None = None):
        super().__init__(message)
        self.source = source
        self.task_index = task_index


class TaskAction(str, Enum):
    RUN_COMMAND = "run_command"
    CREATE_FILE = "create_file"
    DELEGATE_WORK = "delegate_work"


ACTION_ALIASES = {
    "runcommand": TaskAction.RUN_COMMAND,
    "createfile": TaskAction.CREATE_FILE,
    "delegatework": TaskAction.DELEGATE_WORK,
    "runterminal": TaskAction.RUN_COMMAND,
    "copilottask": TaskAction.DELEGATE_WORK,
}

PAYLOAD_FIELDS = {
    TaskAction.RUN_COMMAND: "command",
    TaskAction.CREATE_FILE: "path",
    TaskAction.DELEGATE_WORK: "instruction",
}


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    phase: str
    action: TaskAction
    payload: str
    description: str
    order: int
    priority: int | None = None

    @property
    def command(self) -> str | None:
        return self.payload if self.action is TaskAction.RUN_COMMAND else None

    @property
    def path(self) -> str | None:
        return self.payload if self.action is TaskAction.CREATE_FILE else None

    @property
    def instruction(self) -> str | None:
        return self.payload if self.action is TaskAction.DELEGATE_WORK else None


def _parse_action(raw: Any, *, source: Path | None, index: int) -> TaskAction:
    name = str(raw or "").strip().lower()
    compact = name.replace("_", "").replace("-", "")
    if compact in ACTION_ALIASES:
        return ACTION_ALIASES[compact]
    try:
        return TaskAction(name)
    except ValueError as exc:
        raise ParseError(
            f"Task #{index + 1} has unknown action {raw!r}.", source=source, task_index=index
        ) from exc


def _parse_task(raw: Any, index: int, *, source: Path | None) -> Task:
    if not isinstance(raw, dict):
        raise ParseError(f"Task #{index + 1} is not an object.", source=source, task_index=index)

    raw_id = raw.get("id")
    if isinstance(raw_id, bool) or not isinstance(raw_id, (int, str)):
        raise ParseError(f"Task #{index + 1} has no usable id.", source=source, task_index=index)
    task_id = str(raw_id).strip()
    if not TASK_ID_PATTERN.match(task_id):
        raise ParseError(
            f"Task #{index + 1} id {task_id!r} must match {TASK_ID_PATTERN.pattern}.",
            source=source,
            task_index=index,
        )

    action = _parse_action(raw.get("action"), source=source, index=index)
    description = str(raw.get("description") or "").strip()

    payload_field = PAYLOAD_FIELDS[action]
    payload = raw.get(payload_field)
    if action is TaskAction.DELEGATE_WORK and not payload:
        payload = description
    if not isinstance(payload, str) or not payload.strip():
        raise ParseError(
            f"Task {task_id} ({action.value}) requires a non-empty '{payload_field}' field.",
            source=source,
            task_index=index,
        )
    # Without a description the payload doubles as the progress label.
    description = description or payload.strip()

    priority = raw.get("priority")
    if priority is not None:
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ParseError(
                f"Task {task_id} priority must be an integer.", source=source, task_index=index
            )

    return Task(
        id=task_id,
        phase=str(raw.get("phase") or "").strip(),
        action=action,
        payload=payload.strip(),
        description=description,
        order=index,
        priority=priority,
    )


def _extract_document(content: str, source: Path | None) -> Any:
    stripped = content.strip()
    if stripped.startswith(("{", "[")):
        candidate = stripped
    else:
        match = JSON_BLOCK_PATTERN.search(content)
        if not match:
            raise ParseError("Plan document has no ```json block.", source=source)
        candidate = match.group(1)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Plan JSON is invalid: {exc}", source=source) from exc


def parse_plan(content: str, *, source: Path | None = None) -> list[Task]:
    document = _extract_document(content, source)
    if isinstance(document, dict):
        raw_tasks = document.get("tasks", document.get("steps"))
    else:
        raw_tasks = document
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise ParseError("Plan contains no tasks.", source=source)

    tasks = [_parse_task(item, index, source=source) for index, item in enumerate(raw_tasks)]
    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            raise ParseError(
                f"Duplicate task id {task.id!r}.", source=source, task_index=task.order
            )
        seen.add(task.id)

    if any(task.priority is not None for task in tasks):
        tasks.sort(
            key=lambda task: (
                task.priority is None,
                task.priority if task.priority is not None else 0,
                task.order,
            )
        )
    return tasks


class PlanStore:
    """Loads the ordered task list from a plan file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[Task]:
        if not self.path.exists():
            raise ParseError(f"Plan file not found: {self.path}", source=self.path)
        content = self.path.read_text(encoding="utf-8")
        return parse_plan(content, source=self.path)

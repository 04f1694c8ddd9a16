from __future__ import annotations

from pathlib import Path

from autopilot.plan import Task, TaskAction


def _action_section(task: Task) -> list[str]:
    if task.action is TaskAction.CREATE_FILE:
        return [
            f"Create the file at: {task.payload}",
            f"File purpose: {task.description}",
            "",
            "Write the complete file content. Do not ask questions; infer sensible defaults.",
        ]
    if task.action is TaskAction.RUN_COMMAND:
        return [
            "Run the following command from the workspace root:",
            "```",
            task.payload,
            "```",
            "",
            "Report the result and fix anything the command needs in order to succeed.",
        ]
    return [
        "Carry out the following task:",
        "",
        task.payload,
        "",
        "Make all of the described changes directly in the workspace. Do not ask questions.",
    ]


def build_prompt(task: Task, workspace_root: Path, signal_path: Path) -> str:
    lines = [
        f"You are executing task {task.id} of a multi-step plan.",
        f"Phase: {task.phase or '-'}",
        f"Action: {task.action.value}",
        f"Description: {task.description}",
        f"Workspace root: {workspace_root}",
        "",
        *_action_section(task),
        "",
        "When, and only when, all of the work above is finished, write the single word",
        f"`completed` (nothing else) to this file as your very last action: {signal_path}",
        "Do not touch that file before then.",
    ]
    return "\n".join(lines)

import json
from pathlib import Path

import pytest

from autopilot.plan import ParseError, PlanStore, TaskAction, parse_plan


def _markdown(tasks: list[dict]) -> str:
    return "# Plan\n\nSome prose.\n\n```json\n" + json.dumps({"tasks": tasks}, indent=2) + "\n```\n"


def test_parse_markdown_plan_keeps_declared_order() -> None:
    tasks = parse_plan(
        _markdown(
            [
                {"id": 1, "phase": "setup", "action": "run_command", "command": "mkdir out",
                 "description": "Make output dir"},
                {"id": 2, "action": "create_file", "path": "out/a.txt", "description": "Write a"},
                {"id": "3b", "action": "delegate_work", "description": "Refactor the parser"},
            ]
        )
    )

    assert [task.id for task in tasks] == ["1", "2", "3b"]
    assert tasks[0].action is TaskAction.RUN_COMMAND
    assert tasks[0].command == "mkdir out"
    assert tasks[0].phase == "setup"
    assert tasks[1].path == "out/a.txt"
    assert tasks[1].command is None
    # Instruction falls back to the description.
    assert tasks[2].instruction == "Refactor the parser"
    assert [task.order for task in tasks] == [0, 1, 2]


def test_parse_plain_json_list_and_aliases() -> None:
    content = json.dumps(
        [
            {"id": "a", "action": "run_terminal", "command": "npm install", "description": "deps"},
            {"id": "b", "action": "copilot_task", "instruction": "Do it", "description": "work"},
        ]
    )

    tasks = parse_plan(content)

    assert tasks[0].action is TaskAction.RUN_COMMAND
    assert tasks[1].action is TaskAction.DELEGATE_WORK
    assert tasks[1].instruction == "Do it"


def test_priority_sorts_when_present() -> None:
    tasks = parse_plan(
        json.dumps(
            {
                "steps": [
                    {"id": "x", "action": "delegate_work", "description": "x"},
                    {"id": "y", "action": "delegate_work", "description": "y", "priority": 2},
                    {"id": "z", "action": "delegate_work", "description": "z", "priority": 1},
                ]
            }
        )
    )

    assert [task.id for task in tasks] == ["z", "y", "x"]


@pytest.mark.parametrize(
    ("tasks", "message"),
    [
        ([{"id": 1, "action": "launch", "description": "d"}], "unknown action"),
        ([{"id": 1, "action": "create_file", "description": "d"}], "'path'"),
        ([{"id": 1, "action": "delegate_work"}], "'instruction'"),
        ([{"action": "run_command", "command": "ls", "description": "d"}], "id"),
        (
            [
                {"id": 1, "action": "delegate_work", "description": "d"},
                {"id": 1, "action": "delegate_work", "description": "e"},
            ],
            "Duplicate",
        ),
        ([], "no tasks"),
    ],
)
def test_invalid_plans_raise_parse_error(tasks: list[dict], message: str) -> None:
    with pytest.raises(ParseError, match=message):
        parse_plan(json.dumps({"tasks": tasks}))


def test_parse_error_reports_task_index() -> None:
    with pytest.raises(ParseError) as excinfo:
        parse_plan(
            json.dumps(
                [
                    {"id": 1, "action": "delegate_work", "description": "ok"},
                    {"id": 2, "action": "create_file", "description": "no path"},
                ]
            )
        )

    assert excinfo.value.task_index == 1


def test_markdown_without_json_block_is_rejected() -> None:
    with pytest.raises(ParseError, match="json block"):
        parse_plan("# Plan\n\nJust prose.\n")


def test_plan_store_missing_file(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "PLAN.md")

    with pytest.raises(ParseError, match="not found"):
        store.load()


def test_plan_store_reads_from_disk(tmp_path: Path) -> None:
    path = tmp_path / "PLAN.md"
    path.write_text(
        _markdown([{"id": 7, "action": "create_file", "path": "x.txt", "description": "x"}]),
        encoding="utf-8",
    )

    tasks = PlanStore(path).load()

    assert tasks[0].id == "7"
    assert tasks[0].path == "x.txt"


def test_camel_case_actions_without_descriptions() -> None:
    content = json.dumps(
        [
            {"id": 1, "action": "RunCommand", "command": "mkdir out"},
            {"id": 2, "action": "CreateFile", "path": "out/a.txt"},
            {"id": 3, "action": "DelegateWork", "instruction": "Tidy the README"},
        ]
    )

    tasks = parse_plan(content)

    assert [task.action for task in tasks] == [
        TaskAction.RUN_COMMAND,
        TaskAction.CREATE_FILE,
        TaskAction.DELEGATE_WORK,
    ]
    # The payload stands in for the missing description.
    assert [task.description for task in tasks] == ["mkdir out", "out/a.txt", "Tidy the README"]

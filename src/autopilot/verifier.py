from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from autopilot.plan import Task, TaskAction

logger = logging.getLogger(__name__)

SHELL_CHAINING_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")

EvidenceProbe = Callable[[list[str], Path], str | None]
TaskProbe = Callable[[Task], str | None]


@dataclass(frozen=True, slots=True)
class VerificationResult:
    satisfied: bool
    evidence: str = ""


@dataclass(frozen=True, slots=True)
class CommandEvidenceRule:
    """Recognizes one idempotent command and knows what it leaves on disk."""

    name: str
    pattern: re.Pattern[str]
    probe: EvidenceProbe

    def check(self, command: str, argv: list[str], root: Path) -> str | None:
        if not self.pattern.search(command):
            return None
        return self.probe(argv, root)


def _resolve(root: Path, raw: str) -> Path:
    path = Path(raw).expanduser()
    return path if path.is_absolute() else root / path


def _mkdir_probe(argv: list[str], root: Path) -> str | None:
    targets = [arg for arg in argv[1:] if not arg.startswith("-")]
    if not targets:
        return None
    if all(_resolve(root, target).is_dir() for target in targets):
        return f"directory already exists: {', '.join(targets)}"
    return None


def _lock_and_dir_probe(lock_name: str, dir_name: str) -> EvidenceProbe:
    def _probe(argv: list[str], root: Path) -> str | None:
        _ = argv
        if (root / lock_name).is_file() and (root / dir_name).is_dir():
            return f"{lock_name} and {dir_name}/ already exist"
        return None

    return _probe


def _git_init_probe(argv: list[str], root: Path) -> str | None:
    targets = [arg for arg in argv[2:] if not arg.startswith("-")]
    repo = _resolve(root, targets[0]) if targets else root
    if (repo / ".git").exists():
        return f"{repo / '.git'} already exists"
    return None


def _venv_probe(argv: list[str], root: Path) -> str | None:
    targets = [arg for arg in argv[3:] if not arg.startswith("-")]
    if not targets:
        return None
    env_dir = _resolve(root, targets[0])
    if (env_dir / "pyvenv.cfg").is_file():
        return f"virtual environment already exists: {targets[0]}"
    return None


DEFAULT_COMMAND_RULES: tuple[CommandEvidenceRule, ...] = (
    CommandEvidenceRule("mkdir", re.compile(r"^mkdir\b"), _mkdir_probe),
    CommandEvidenceRule(
        "npm-install",
        re.compile(r"^npm\s+(?:install|i|ci)\s*$"),
        _lock_and_dir_probe("package-lock.json", "node_modules"),
    ),
    CommandEvidenceRule(
        "uv-sync", re.compile(r"^uv\s+sync\b"), _lock_and_dir_probe("uv.lock", ".venv")
    ),
    CommandEvidenceRule("git-init", re.compile(r"^git\s+init\b"), _git_init_probe),
    CommandEvidenceRule(
        "python-venv", re.compile(r"^python3?\s+-m\s+venv\b"), _venv_probe
    ),
)


class StepVerifier:
    """Cheap, best-effort check for work that is already done.

    A false negative only costs a re-dispatch; a false positive would skip
    unfinished work, so anything not positively recognized is "not done".
    """

    def __init__(
        self,
        workspace_root: Path,
        command_rules: tuple[CommandEvidenceRule, ...] | list[CommandEvidenceRule] | None = None,
    ) -> None:
        self.workspace_root = workspace_root
        self.command_rules = list(DEFAULT_COMMAND_RULES if command_rules is None else command_rules)
        self._probes: dict[TaskAction, TaskProbe] = {
            TaskAction.CREATE_FILE: self._check_file,
            TaskAction.RUN_COMMAND: self._check_command,
            TaskAction.DELEGATE_WORK: lambda task: None,
        }

    def register(self, action: TaskAction, probe: TaskProbe) -> None:
        self._probes[action] = probe

    def add_command_rule(self, rule: CommandEvidenceRule) -> None:
        self.command_rules.append(rule)

    def _check_file(self, task: Task) -> str | None:
        target = _resolve(self.workspace_root, task.payload)
        try:
            size = target.stat().st_size
        except OSError:
            return None
        if target.is_file() and size > 0:
            return f"file already exists: {task.payload} ({size} bytes)"
        return None

    def _check_command(self, task: Task) -> str | None:
        command = task.payload.strip()
        if SHELL_CHAINING_PATTERN.search(command):
            return None
        try:
            argv = shlex.split(command)
        except ValueError:
            return None
        if not argv:
            return None
        for rule in self.command_rules:
            evidence = rule.check(command, argv, self.workspace_root)
            if evidence:
                return evidence
        return None

    def check(self, task: Task) -> VerificationResult:
        probe = self._probes.get(task.action)
        if probe is None:
            return VerificationResult(satisfied=False)
        evidence = probe(task)
        if evidence:
            logger.info("Task %s verified: %s", task.id, evidence)
            return VerificationResult(satisfied=True, evidence=evidence)
        return VerificationResult(satisfied=False)

    def is_satisfied(self, task: Task) -> bool:
        return self.check(task).satisfied

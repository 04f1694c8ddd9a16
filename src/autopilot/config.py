from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

DelegateName = Literal["claude", "codex"]
StrategyName = Literal["signal", "heuristic"]

DELEGATE_NAMES = {"claude", "codex"}
STRATEGY_NAMES = {"signal", "heuristic"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


@dataclass(slots=True)
class ProjectConfig:
    plan_file: str = "PLAN.md"
    progress_file: str = "PROGRESS.md"
    state_dir: str = ".autopilot"


@dataclass(slots=True)
class DelegateConfig:
    primary: DelegateName = "claude"
    fallback: DelegateName = "codex"
    model: str = ""
    extra_args: list[str] = field(default_factory=list)
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    run_commands_locally: bool = True
    command_timeout_seconds: float = 600.0


@dataclass(slots=True)
class LoopConfig:
    max_loops: int = 2
    settle_delay_seconds: float = 3.0


@dataclass(slots=True)
class CompletionConfig:
    strategy: StrategyName = "signal"
    poll_interval_seconds: float = 5.0
    timeout_seconds: float = 600.0
    minimum_wait_seconds: float = 15.0
    idle_threshold_seconds: float = 30.0


@dataclass(slots=True)
class LockConfig:
    poll_interval_seconds: float = 5.0
    stale_timeout_seconds: float = 600.0


@dataclass(slots=True)
class ActivityConfig:
    ignore_patterns: list[str] = field(
        default_factory=lambda: ["*.swp", "*.tmp", "*~", ".git/*"]
    )
    queue_size: int = 1024


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = "autopilot.log"


@dataclass(slots=True)
class AutopilotConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    delegate: DelegateConfig = field(default_factory=DelegateConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> AutopilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutopilotConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            delegate=DelegateConfig(**data.get("delegate", {})),
            loop=LoopConfig(**data.get("loop", {})),
            completion=CompletionConfig(**data.get("completion", {})),
            lock=LockConfig(**data.get("lock", {})),
            activity=ActivityConfig(**data.get("activity", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "plan_file": self.project.plan_file,
                "progress_file": self.project.progress_file,
                "state_dir": self.project.state_dir,
            },
            "delegate": {
                "primary": self.delegate.primary,
                "fallback": self.delegate.fallback,
                "model": self.delegate.model,
                "extra_args": list(self.delegate.extra_args),
                "max_retries": self.delegate.max_retries,
                "retry_backoff_seconds": self.delegate.retry_backoff_seconds,
                "run_commands_locally": self.delegate.run_commands_locally,
                "command_timeout_seconds": self.delegate.command_timeout_seconds,
            },
            "loop": {
                "max_loops": self.loop.max_loops,
                "settle_delay_seconds": self.loop.settle_delay_seconds,
            },
            "completion": {
                "strategy": self.completion.strategy,
                "poll_interval_seconds": self.completion.poll_interval_seconds,
                "timeout_seconds": self.completion.timeout_seconds,
                "minimum_wait_seconds": self.completion.minimum_wait_seconds,
                "idle_threshold_seconds": self.completion.idle_threshold_seconds,
            },
            "lock": {
                "poll_interval_seconds": self.lock.poll_interval_seconds,
                "stale_timeout_seconds": self.lock.stale_timeout_seconds,
            },
            "activity": {
                "ignore_patterns": list(self.activity.ignore_patterns),
                "queue_size": self.activity.queue_size,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }

    def validate(self) -> None:
        if self.delegate.primary not in DELEGATE_NAMES:
            raise ValueError(f"Unknown delegate: {self.delegate.primary}")
        if self.delegate.fallback not in DELEGATE_NAMES:
            raise ValueError(f"Unknown fallback delegate: {self.delegate.fallback}")
        if self.completion.strategy not in STRATEGY_NAMES:
            raise ValueError(f"Unknown completion strategy: {self.completion.strategy}")
        if self.logging.level.upper() not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.logging.level}")
        if self.loop.max_loops < 1:
            raise ValueError("loop.max_loops must be >= 1.")
        if self.loop.settle_delay_seconds < 0:
            raise ValueError("loop.settle_delay_seconds must be >= 0.")
        if self.delegate.max_retries < 0:
            raise ValueError("delegate.max_retries must be >= 0.")
        positive = {
            "completion.poll_interval_seconds": self.completion.poll_interval_seconds,
            "completion.timeout_seconds": self.completion.timeout_seconds,
            "completion.idle_threshold_seconds": self.completion.idle_threshold_seconds,
            "lock.poll_interval_seconds": self.lock.poll_interval_seconds,
            "lock.stale_timeout_seconds": self.lock.stale_timeout_seconds,
            "delegate.command_timeout_seconds": self.delegate.command_timeout_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.completion.minimum_wait_seconds < 0:
            raise ValueError("completion.minimum_wait_seconds must be >= 0.")
        if self.activity.queue_size < 1:
            raise ValueError("activity.queue_size must be >= 1.")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutopilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "delegate", "loop", "completion", "lock", "activity", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutopilotConfig:
    if not path.exists():
        return AutopilotConfig.default()
    return AutopilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AutopilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")

from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from autopilot.errors import ConfigurationError

AssistantKind = Literal["echo", "command", "file_drop"]

CONFIG_FILE_NAME = "autopilot.toml"
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

DEFAULT_SUCCESS_INDICATORS = [
    "task completed successfully",
    "task complete",
    "completed",
    "done",
    "finished",
    "success",
    "implemented",
    "fixed",
    "resolved",
    "all set",
]
DEFAULT_FAILURE_INDICATORS = [
    "error",
    "failed",
    "cannot",
    "unable to",
    "could not",
    "exception",
    "crashed",
]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkspaceConfig:
    specs_dir: str = "specs"
    task_file: str = "tasks.md"
    requirements_file: str = "requirements.md"
    design_file: str = "design.md"
    spec_order: list[str] = field(default_factory=list)
    state_dir: str = ".autopilot"
    watch_interval_ms: int = 1000


@dataclass(slots=True)
class EngineConfig:
    enabled: bool = True
    concurrency: int = 1
    max_retries: int = 3
    task_timeout_ms: int = 300_000
    task_delay_ms: int = 1000
    skip_optional_tasks: bool = False
    excluded_specs: list[str] = field(default_factory=list)
    excluded_tasks: list[str] = field(default_factory=list)
    verify_completion: bool = True
    continue_on_failure: bool = False
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30_000
    poll_interval_ms: int = 2000
    max_prompt_chars: int = 50_000

    @property
    def effective_concurrency(self) -> int:
        """Tasks are dispatched one at a time whatever ``concurrency`` asks for."""
        return 1


@dataclass(slots=True)
class CompletionConfig:
    success_indicators: list[str] = field(
        default_factory=lambda: list(DEFAULT_SUCCESS_INDICATORS)
    )
    failure_indicators: list[str] = field(
        default_factory=lambda: list(DEFAULT_FAILURE_INDICATORS)
    )


@dataclass(slots=True)
class ResourcesConfig:
    max_memory_mb: int = 500
    max_cpu_percent: float = 80.0
    max_task_duration_ms: int = 600_000
    snapshot_interval_ms: int = 5000
    leak_window: int = 5
    leak_threshold_mb: float = 50.0
    cache_max_entries: int = 1000
    cache_max_mb: float = 50.0
    cache_ttl_ms: int = 300_000


@dataclass(slots=True)
class AssistantConfig:
    kind: AssistantKind = "echo"
    command: list[str] = field(default_factory=lambda: ["claude", "-p"])
    drop_dir: str = ".autopilot/exchange"
    reply: str = "Task completed successfully."


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class AutopilotConfig:
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    resources: ResourcesConfig = field(default_factory=ResourcesConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> AutopilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutopilotConfig:
        try:
            return cls(
                workspace=WorkspaceConfig(**data.get("workspace", {})),
                engine=EngineConfig(**data.get("engine", {})),
                completion=CompletionConfig(**data.get("completion", {})),
                resources=ResourcesConfig(**data.get("resources", {})),
                assistant=AssistantConfig(**data.get("assistant", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigurationError(f"Unrecognized configuration option: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "workspace": {
                "specs_dir": self.workspace.specs_dir,
                "task_file": self.workspace.task_file,
                "requirements_file": self.workspace.requirements_file,
                "design_file": self.workspace.design_file,
                "spec_order": list(self.workspace.spec_order),
                "state_dir": self.workspace.state_dir,
                "watch_interval_ms": self.workspace.watch_interval_ms,
            },
            "engine": {
                "enabled": self.engine.enabled,
                "concurrency": self.engine.concurrency,
                "max_retries": self.engine.max_retries,
                "task_timeout_ms": self.engine.task_timeout_ms,
                "task_delay_ms": self.engine.task_delay_ms,
                "skip_optional_tasks": self.engine.skip_optional_tasks,
                "excluded_specs": list(self.engine.excluded_specs),
                "excluded_tasks": list(self.engine.excluded_tasks),
                "verify_completion": self.engine.verify_completion,
                "continue_on_failure": self.engine.continue_on_failure,
                "retry_base_delay_ms": self.engine.retry_base_delay_ms,
                "retry_max_delay_ms": self.engine.retry_max_delay_ms,
                "poll_interval_ms": self.engine.poll_interval_ms,
                "max_prompt_chars": self.engine.max_prompt_chars,
            },
            "completion": {
                "success_indicators": list(self.completion.success_indicators),
                "failure_indicators": list(self.completion.failure_indicators),
            },
            "resources": {
                "max_memory_mb": self.resources.max_memory_mb,
                "max_cpu_percent": self.resources.max_cpu_percent,
                "max_task_duration_ms": self.resources.max_task_duration_ms,
                "snapshot_interval_ms": self.resources.snapshot_interval_ms,
                "leak_window": self.resources.leak_window,
                "leak_threshold_mb": self.resources.leak_threshold_mb,
                "cache_max_entries": self.resources.cache_max_entries,
                "cache_max_mb": self.resources.cache_max_mb,
                "cache_ttl_ms": self.resources.cache_ttl_ms,
            },
            "assistant": {
                "kind": self.assistant.kind,
                "command": list(self.assistant.command),
                "drop_dir": self.assistant.drop_dir,
                "reply": self.assistant.reply,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def validate(self) -> None:
        """Raise ConfigurationError naming the first invalid option."""
        checks: list[tuple[bool, str]] = [
            (self.engine.max_retries >= 0, "engine.max_retries must be >= 0"),
            (self.engine.task_timeout_ms > 0, "engine.task_timeout_ms must be > 0"),
            (self.engine.task_delay_ms >= 0, "engine.task_delay_ms must be >= 0"),
            (self.engine.concurrency >= 1, "engine.concurrency must be >= 1"),
            (self.engine.retry_base_delay_ms >= 0, "engine.retry_base_delay_ms must be >= 0"),
            (
                self.engine.retry_max_delay_ms >= self.engine.retry_base_delay_ms,
                "engine.retry_max_delay_ms must be >= engine.retry_base_delay_ms",
            ),
            (self.engine.poll_interval_ms > 0, "engine.poll_interval_ms must be > 0"),
            (self.engine.max_prompt_chars > 0, "engine.max_prompt_chars must be > 0"),
            (
                bool(self.completion.success_indicators),
                "completion.success_indicators must not be empty",
            ),
            (
                bool(self.completion.failure_indicators),
                "completion.failure_indicators must not be empty",
            ),
            (self.resources.max_memory_mb > 0, "resources.max_memory_mb must be > 0"),
            (
                0 < self.resources.max_cpu_percent <= 100,
                "resources.max_cpu_percent must be within (0, 100]",
            ),
            (
                self.resources.max_task_duration_ms > 0,
                "resources.max_task_duration_ms must be > 0",
            ),
            (
                self.resources.snapshot_interval_ms > 0,
                "resources.snapshot_interval_ms must be > 0",
            ),
            (self.resources.leak_window >= 2, "resources.leak_window must be >= 2"),
            (self.resources.cache_max_entries > 0, "resources.cache_max_entries must be > 0"),
            (self.resources.cache_ttl_ms > 0, "resources.cache_ttl_ms must be > 0"),
            (
                self.assistant.kind in {"echo", "command", "file_drop"},
                f"assistant.kind is not supported: {self.assistant.kind}",
            ),
            (
                self.assistant.kind != "command" or bool(self.assistant.command),
                "assistant.command must not be empty for kind 'command'",
            ),
            (
                self.logging.level.upper() in LOG_LEVELS,
                f"logging.level is not a known level: {self.logging.level}",
            ),
            (self.workspace.watch_interval_ms > 0, "workspace.watch_interval_ms must be > 0"),
        ]
        for ok, message in checks:
            if not ok:
                raise ConfigurationError(f"Invalid configuration: {message}")
        if self.engine.concurrency > 1:
            logger.warning(
                "engine.concurrency=%s requested; tasks are dispatched one at a time.",
                self.engine.concurrency,
            )

    def snapshot(self) -> dict[str, Any]:
        return self.to_dict()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutopilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["workspace", "engine", "completion", "resources", "assistant", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutopilotConfig:
    if not path.exists():
        return AutopilotConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Could not parse {path}: {exc}") from exc
    return AutopilotConfig.from_dict(data)


def save_config(path: Path, config: AutopilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")

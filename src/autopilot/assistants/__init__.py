from __future__ import annotations

from pathlib import Path

from autopilot.assistants.base import Assistant, AssistantClient, PollingAssistantClient
from autopilot.assistants.command import CommandAssistant
from autopilot.assistants.echo import EchoAssistant
from autopilot.assistants.file_drop import FileDropAssistant
from autopilot.config import AssistantConfig
from autopilot.errors import ConfigurationError


def build_assistant(config: AssistantConfig, workspace_root: Path) -> Assistant:
    if config.kind == "echo":
        return EchoAssistant(config.reply)
    if config.kind == "command":
        return CommandAssistant(config.command, working_directory=workspace_root)
    if config.kind == "file_drop":
        return FileDropAssistant(workspace_root / config.drop_dir)
    raise ConfigurationError(f"Unsupported assistant kind: {config.kind}")


__all__ = [
    "Assistant",
    "AssistantClient",
    "CommandAssistant",
    "EchoAssistant",
    "FileDropAssistant",
    "PollingAssistantClient",
    "build_assistant",
]

import asyncio
import sys
from pathlib import Path

import pytest

from autopilot.assistants import (
    CommandAssistant,
    EchoAssistant,
    FileDropAssistant,
    build_assistant,
)
from autopilot.config import AssistantConfig
from autopilot.errors import ConfigurationError, TransportError


async def _collect(assistant, prompt: str, context: dict | None = None) -> list[str]:
    return [chunk async for chunk in assistant.execute(prompt, context or {})]


def test_echo_assistant_streams_reply_in_chunks() -> None:
    assistant = EchoAssistant("Task complete", chunk_size=5)

    chunks = asyncio.run(_collect(assistant, "do the thing"))

    assert chunks == ["Task ", "compl", "ete"]
    assert assistant.prompts == ["do the thing"]


def test_command_assistant_pipes_prompt_and_streams_stdout(tmp_path: Path) -> None:
    script = (
        "import os, sys\n"
        "data = sys.stdin.read()\n"
        "print('received', len(data), os.environ['AUTOPILOT_TASK_KEY'])\n"
        "print()\n"
        "print('Task complete')\n"
    )
    assistant = CommandAssistant([sys.executable, "-c", script], working_directory=tmp_path)

    chunks = asyncio.run(_collect(assistant, "hello", {"task_key": "core:1"}))

    assert [chunk.strip() for chunk in chunks] == ["received 5 core:1", "Task complete"]


def test_command_assistant_nonzero_exit_is_transport_error() -> None:
    script = "import sys\nsys.stderr.write('rate limited')\nsys.exit(3)\n"
    assistant = CommandAssistant([sys.executable, "-c", script])

    with pytest.raises(TransportError, match="exit code 3: rate limited"):
        asyncio.run(_collect(assistant, "prompt"))


def test_command_assistant_missing_binary_is_configuration_error() -> None:
    assistant = CommandAssistant(["definitely-not-an-installed-assistant-binary"])

    with pytest.raises(ConfigurationError):
        asyncio.run(_collect(assistant, "prompt"))


def test_empty_command_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        CommandAssistant([])


def test_file_drop_exchanges_prompt_and_reply(tmp_path: Path) -> None:
    assistant = FileDropAssistant(tmp_path / "exchange")

    async def scenario() -> tuple[str, str | None, str | None]:
        message_id = await assistant.submit("# Prompt", {"task_key": "core:2.1"})
        before = await assistant.latest_response(message_id)
        assistant.response_path(message_id).write_text("All done", encoding="utf-8")
        after = await assistant.latest_response(message_id)
        return message_id, before, after

    message_id, before, after = asyncio.run(scenario())

    assert message_id.startswith("core-2.1-")
    assert assistant.prompt_path(message_id).read_text(encoding="utf-8") == "# Prompt"
    assert before is None
    assert after == "All done"


def test_build_assistant_follows_config(tmp_path: Path) -> None:
    assert isinstance(build_assistant(AssistantConfig(kind="echo"), tmp_path), EchoAssistant)
    command = build_assistant(AssistantConfig(kind="command", command=["agent"]), tmp_path)
    assert isinstance(command, CommandAssistant)
    assert command.working_directory == tmp_path
    drop = build_assistant(AssistantConfig(kind="file_drop", drop_dir="inbox"), tmp_path)
    assert isinstance(drop, FileDropAssistant)
    assert drop.drop_dir == tmp_path / "inbox"

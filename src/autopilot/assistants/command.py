from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from autopilot.assistants.base import AssistantClient
from autopilot.errors import ConfigurationError, TransportError


class CommandAssistant(AssistantClient):
    """Runs a command per prompt: the prompt goes to stdin, stdout lines are the reply."""

    name = "command"

    def __init__(self, command: list[str], working_directory: Path | None = None) -> None:
        if not command:
            raise ConfigurationError("Assistant command must not be empty.")
        self.command = list(command)
        self.working_directory = working_directory

    def build_env(self, context: dict[str, Any]) -> dict[str, str]:
        env = os.environ.copy()
        for key in ("spec", "task_id", "task_key", "attempt", "session_id"):
            if context.get(key) is not None:
                env[f"AUTOPILOT_{key.upper()}"] = str(context[key])
        return env

    @staticmethod
    async def _feed(process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            process.stdin.close()

    async def execute(self, prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=self.build_env(context),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Assistant command not found: {self.command[0]}") from exc
        except OSError as exc:
            raise TransportError(f"Could not start assistant command: {exc}") from exc

        if process.stdout is None:
            raise TransportError("Assistant command did not expose stdout.")

        feeder = asyncio.create_task(self._feed(process, prompt))
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace")
                if line.strip():
                    yield line
            await feeder
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            return_code = await process.wait()
            if return_code != 0:
                raise TransportError(
                    f"Assistant command failed with exit code {return_code}: {stderr_output}"
                )
        finally:
            feeder.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()

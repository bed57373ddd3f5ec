from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from autopilot.assistants.base import AssistantClient


class EchoAssistant(AssistantClient):
    """Replies with a fixed text. Used for dry runs."""

    name = "echo"

    def __init__(
        self,
        reply: str = "Task completed successfully.",
        *,
        chunk_size: int | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.reply = reply
        self.chunk_size = chunk_size
        self.delay_seconds = delay_seconds
        self.prompts: list[str] = []

    async def execute(self, prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        size = self.chunk_size or max(1, len(self.reply))
        for start in range(0, len(self.reply), size):
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield self.reply[start : start + size]

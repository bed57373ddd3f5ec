from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class AssistantClient(ABC):
    """Push-style collaborator: the reply arrives as a stream of text chunks."""

    name: str = "assistant"

    @abstractmethod
    async def execute(self, prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
        """Send ``prompt`` and stream the reply."""

    async def close(self) -> None:
        return None


class PollingAssistantClient(ABC):
    """Collaborator without push notification: submit, then poll for the latest reply."""

    name: str = "polling-assistant"

    @abstractmethod
    async def submit(self, prompt: str, context: dict[str, Any]) -> str:
        """Send ``prompt`` and return a message id to poll with."""

    @abstractmethod
    async def latest_response(self, message_id: str) -> str | None:
        """Return the reply text seen so far, or None when nothing has arrived."""

    async def close(self) -> None:
        return None


Assistant = AssistantClient | PollingAssistantClient

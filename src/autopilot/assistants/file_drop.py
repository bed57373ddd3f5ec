from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Any
from uuid import uuid4

from autopilot.assistants.base import PollingAssistantClient

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class FileDropAssistant(PollingAssistantClient):
    """Exchanges prompts and replies as files in a drop directory.

    ``submit`` writes ``<id>.prompt.md``; whoever handles the prompt writes
    ``<id>.response.md`` next to it.
    """

    name = "file_drop"

    def __init__(self, drop_dir: Path) -> None:
        self.drop_dir = drop_dir

    def prompt_path(self, message_id: str) -> Path:
        return self.drop_dir / f"{message_id}.prompt.md"

    def response_path(self, message_id: str) -> Path:
        return self.drop_dir / f"{message_id}.response.md"

    async def submit(self, prompt: str, context: dict[str, Any]) -> str:
        label = _UNSAFE.sub("-", str(context.get("task_key") or "task")).strip("-") or "task"
        message_id = f"{label}-{uuid4().hex[:8]}"
        self.drop_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".prompt.", dir=self.drop_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(prompt)
        os.replace(temp_name, self.prompt_path(message_id))
        return message_id

    async def latest_response(self, message_id: str) -> str | None:
        path = self.response_path(message_id)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

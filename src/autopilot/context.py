from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from autopilot.config import AutopilotConfig
from autopilot.events import EventBus


def workspace_id_for(root: Path) -> str:
    """Basename plus a short digest of the resolved path, usable as one logger name level."""
    digest = hashlib.sha256(str(root).encode("utf-8")).hexdigest()[:8]
    return f"{root.name.replace('.', '_')}-{digest}"


@dataclass(slots=True)
class RuntimeContext:
    """Per-workspace dependencies handed to every component.

    Engines for different workspaces never share a context, so they share no
    mutable state.
    """

    workspace_root: Path
    config: AutopilotConfig
    events: EventBus
    logger: logging.Logger

    @classmethod
    def create(cls, workspace_root: Path, config: AutopilotConfig | None = None) -> RuntimeContext:
        root = workspace_root.resolve()
        resolved = config or AutopilotConfig.default()
        workspace_id = workspace_id_for(root)
        return cls(
            workspace_root=root,
            config=resolved,
            events=EventBus(workspace_id),
            logger=logging.getLogger(f"autopilot.workspace.{workspace_id}"),
        )

    @property
    def workspace_name(self) -> str:
        return self.workspace_root.name

    @property
    def workspace_id(self) -> str:
        return workspace_id_for(self.workspace_root)

    @property
    def specs_root(self) -> Path:
        return self.workspace_root / self.config.workspace.specs_dir

    @property
    def state_root(self) -> Path:
        return self.workspace_root / self.config.workspace.state_dir

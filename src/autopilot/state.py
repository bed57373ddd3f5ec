from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

from autopilot.errors import RevisionConflictError, StateStoreError
from autopilot.models import Session, utcnow_iso

HISTORY_LIMIT = 20
LOCK_TIMEOUT_SECONDS = 3.0
UPDATE_ATTEMPTS = 4


class SessionStateStore:
    """Versioned JSON state files under ``<state_root>/state``.

    Each namespace is one file holding an envelope with ``schema_version``,
    ``revision``, ``updated_at`` and ``data``. Writes go through a lock file and
    an optimistic revision check.
    """

    NAMESPACES = frozenset({"session", "history"})
    SCHEMA_VERSION = 1

    def __init__(self, state_root: Path) -> None:
        self.state_dir = state_root / "state"
        self.lock_path = self.state_dir / ".lock"

    def _path_for(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")
        return self.state_dir / f"{namespace}.json"

    def _acquire_lock(self, deadline: float) -> None:
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError as exc:
                if time.monotonic() >= deadline:
                    raise StateStoreError(f"State lock held: {self.lock_path}") from exc
                time.sleep(0.02)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            return

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the lock file for the duration of the block."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._acquire_lock(time.monotonic() + LOCK_TIMEOUT_SECONDS)
        try:
            yield
        finally:
            with suppress(FileNotFoundError):
                self.lock_path.unlink()

    def _load(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            return None

    def _dump(self, path: Path, envelope: dict[str, Any]) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.stem}.", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(envelope, handle, ensure_ascii=False, indent=2)
            os.replace(temp_name, path)
        except OSError as exc:
            with suppress(OSError):
                os.unlink(temp_name)
            raise StateStoreError(f"Could not write {path}: {exc}") from exc

    def _envelope(
        self, data: Any, revision: int = 0, updated_at: str | None = None
    ) -> dict[str, Any]:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": updated_at or utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        fallback = {} if default is None else default
        raw = self._load(self._path_for(namespace))
        if raw is None:
            return self._envelope(fallback)
        if not isinstance(raw, dict) or not {"schema_version", "revision", "data"} <= raw.keys():
            # Bare payload written without an envelope.
            return self._envelope(raw)
        envelope = self._envelope(
            raw.get("data", fallback), int(raw.get("revision") or 0), raw.get("updated_at")
        )
        envelope["schema_version"] = int(raw.get("schema_version") or self.SCHEMA_VERSION)
        return envelope

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default)["data"]

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        """Write ``data`` and return the new revision.

        With ``expected_revision`` set, the write only succeeds when the file is
        still at that revision.
        """
        path = self._path_for(namespace)
        with self.locked():
            revision = self.get_envelope(namespace)["revision"]
            if expected_revision is not None and expected_revision != revision:
                raise RevisionConflictError(
                    f"Concurrent write to '{namespace}': expected revision "
                    f"{expected_revision}, found {revision}"
                )
            self._dump(path, self._envelope(data, revision + 1))
        return revision + 1

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write ``namespace``, re-reading on revision conflicts."""
        fallback = {} if default is None else default
        attempt = 1
        while True:
            envelope = self.get_envelope(namespace, default=fallback)
            updated = updater(envelope["data"])
            try:
                self.set_json(namespace, updated, expected_revision=envelope["revision"])
                return updated
            except RevisionConflictError:
                if attempt >= UPDATE_ATTEMPTS:
                    raise
                time.sleep(0.01 * attempt)
                attempt += 1

    def save_session(self, session: Session) -> None:
        """Checkpoint the live session."""
        self.set_json("session", session.to_dict())

    def load_session(self) -> Session | None:
        payload = self.get_json("session", default={})
        if not isinstance(payload, dict) or "session_id" not in payload:
            return None
        try:
            return Session.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(f"Corrupt session checkpoint: {exc}") from exc

    def unfinished_session(self) -> Session | None:
        session = self.load_session()
        if session is None or session.status.is_closed:
            return None
        return session

    def clear_session(self) -> None:
        self.set_json("session", {})

    def record_history(self, session: Session) -> None:
        summary = {
            "session_id": session.id,
            "status": str(session.status),
            "started_at": session.started_at,
            "ended_at": session.ended_at,
            "completed": len(session.completed),
            "failed": len(session.failed),
            "skipped": len(session.skipped),
        }

        def append(payload: Any) -> dict[str, Any]:
            history = payload if isinstance(payload, dict) else {"sessions": []}
            sessions = history.setdefault("sessions", [])
            sessions.append(summary)
            del sessions[:-HISTORY_LIMIT]
            return history

        self.update_json("history", append, default={"sessions": []})

    def history(self) -> list[dict[str, Any]]:
        payload = self.get_json("history", default={"sessions": []})
        sessions = payload.get("sessions", []) if isinstance(payload, dict) else []
        return sessions if isinstance(sessions, list) else []

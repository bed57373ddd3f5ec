import json
from pathlib import Path

import pytest

from autopilot.errors import ErrorKind, RevisionConflictError, StateStoreError
from autopilot.models import Session, SessionStatus, TaskRef
from autopilot.state import HISTORY_LIMIT, SessionStateStore


def _session() -> Session:
    session = Session.open("demo", {"engine": {"max_retries": 2}})
    session.completed.append(TaskRef(spec="core", id="1"))
    session.failed.append(TaskRef(spec="core", id="2"))
    record = session.retry_record("core:2")
    record.attempts = 3
    record.record(ErrorKind.TIMEOUT, "No completion indicator within 1.0s")
    session.note("task_failed", task="core:2")
    return session


def test_session_checkpoint_roundtrip(tmp_path: Path) -> None:
    store = SessionStateStore(tmp_path)
    session = _session()

    store.save_session(session)
    loaded = store.load_session()

    assert loaded is not None
    assert loaded.id == session.id
    assert loaded.completed == [TaskRef(spec="core", id="1")]
    assert loaded.failed == [TaskRef(spec="core", id="2")]
    assert loaded.retry_records["core:2"].attempts == 3
    assert loaded.retry_records["core:2"].last_error.kind == ErrorKind.TIMEOUT
    assert loaded.history[-1]["action"] == "task_failed"
    assert loaded.config == {"engine": {"max_retries": 2}}


def test_checkpoint_is_a_versioned_envelope(tmp_path: Path) -> None:
    store = SessionStateStore(tmp_path)
    store.save_session(_session())
    store.save_session(_session())

    on_disk = json.loads((tmp_path / "state" / "session.json").read_text(encoding="utf-8"))

    assert on_disk["schema_version"] == SessionStateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 2
    assert on_disk["data"]["workspace"] == "demo"
    assert not (tmp_path / "state" / ".lock").exists()


def test_unfinished_session_ignores_closed_sessions(tmp_path: Path) -> None:
    store = SessionStateStore(tmp_path)
    session = _session()
    store.save_session(session)
    assert store.unfinished_session() is not None

    session.close(SessionStatus.COMPLETED)
    store.save_session(session)

    assert store.unfinished_session() is None
    store.clear_session()
    assert store.load_session() is None


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = SessionStateStore(tmp_path)
    revision = store.set_json("session", {"session_id": "a"})

    store.set_json("session", {"session_id": "b"}, expected_revision=revision)

    with pytest.raises(StateStoreError, match="Concurrent"):
        store.set_json("session", {"session_id": "c"}, expected_revision=revision)


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(StateStoreError):
        SessionStateStore(tmp_path).set_json("secrets", {})


def test_corrupt_checkpoint_reads_as_empty(tmp_path: Path) -> None:
    state_file = tmp_path / "state" / "session.json"
    state_file.parent.mkdir(parents=True)
    state_file.write_text("{not json", encoding="utf-8")

    assert SessionStateStore(tmp_path).load_session() is None


def test_history_keeps_the_most_recent_sessions(tmp_path: Path) -> None:
    store = SessionStateStore(tmp_path)
    ids = []
    for _ in range(HISTORY_LIMIT + 3):
        session = _session()
        session.close(SessionStatus.HALTED)
        store.record_history(session)
        ids.append(session.id)

    history = store.history()

    assert len(history) == HISTORY_LIMIT
    assert [entry["session_id"] for entry in history] == ids[-HISTORY_LIMIT:]
    assert history[-1]["status"] == "halted"
    assert history[-1]["completed"] == 1


def test_update_rereads_after_a_concurrent_write(tmp_path: Path) -> None:
    store = SessionStateStore(tmp_path)
    store.set_json("history", {"sessions": [{"session_id": "first"}]})
    calls: list[int] = []

    def append(payload: dict) -> dict:
        calls.append(len(payload["sessions"]))
        if len(calls) == 1:
            store.set_json("history", {"sessions": [{"session_id": "first"}, {"session_id": "x"}]})
        return {"sessions": [*payload["sessions"], {"session_id": "mine"}]}

    store.update_json("history", append)

    assert calls == [1, 2]
    assert [entry["session_id"] for entry in store.history()] == ["first", "x", "mine"]
    assert store.get_envelope("history")["revision"] == 3


def test_stale_revision_raises_a_conflict_error(tmp_path: Path) -> None:
    store = SessionStateStore(tmp_path)
    store.set_json("session", {"session_id": "a"})

    with pytest.raises(RevisionConflictError, match="expected revision 0, found 1"):
        store.set_json("session", {"session_id": "b"}, expected_revision=0)

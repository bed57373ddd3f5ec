from pathlib import Path
from typing import Any

from autopilot.config import AutopilotConfig
from autopilot.context import RuntimeContext
from autopilot.resources import BoundedCache, ResourceSample, ResourceSupervisor


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class ScriptedSampler:
    def __init__(self, *memory_mb: float, cpu_percent: float = 5.0) -> None:
        self.memory = list(memory_mb)
        self.cpu_percent = cpu_percent

    def __call__(self) -> ResourceSample:
        value = self.memory.pop(0) if len(self.memory) > 1 else self.memory[0]
        return ResourceSample(memory_mb=value, cpu_percent=self.cpu_percent)


def _supervisor(
    tmp_path: Path, sampler: ScriptedSampler, clock: FakeClock | None = None, **settings: Any
) -> tuple[ResourceSupervisor, list[dict[str, Any]]]:
    config = AutopilotConfig.default()
    for key, value in settings.items():
        setattr(config.resources, key, value)
    context = RuntimeContext.create(tmp_path, config)
    events: list[dict[str, Any]] = []
    context.events.subscribe(events.append)
    supervisor = ResourceSupervisor(context, sampler=sampler, clock=clock or FakeClock())
    return supervisor, events


def test_cache_evicts_least_recently_used_entry() -> None:
    cache = BoundedCache(max_entries=2)
    cache.set("a", "1")
    cache.set("b", "2")
    assert cache.get("a") == "1"

    cache.set("c", "3")

    assert "b" not in cache
    assert "a" in cache and "c" in cache
    assert cache.stats()["evictions"] == 1


def test_cache_respects_byte_budget() -> None:
    cache = BoundedCache(max_bytes=10)

    assert cache.set("x", "abcdef") is True
    assert cache.set("y", "ghijkl") is True
    assert cache.set("huge", "z" * 11) is False

    assert "x" not in cache
    assert cache.size_bytes == 6
    assert len(cache) == 1


def test_cache_entries_expire() -> None:
    clock = FakeClock()
    cache = BoundedCache(ttl_seconds=10, clock=clock)
    cache.set("doc", "body")

    clock.now = 11
    assert cache.get("doc", "missing") == "missing"
    assert cache.stats()["expirations"] == 1

    loads: list[str] = []
    value = cache.get_or_load("doc", lambda: loads.append("doc") or "fresh")
    assert value == "fresh"
    assert cache.get_or_load("doc", lambda: "other") == "fresh"
    assert loads == ["doc"]


def test_memory_threshold_raises_warning_then_critical(tmp_path: Path) -> None:
    supervisor, events = _supervisor(tmp_path, ScriptedSampler(120, 150), max_memory_mb=100)
    supervisor.cache.set("prompt", "cached text")

    supervisor.take_snapshot()
    assert [alert.severity for alert in supervisor.alerts] == ["warning"]
    assert len(supervisor.cache) == 1

    supervisor.take_snapshot()
    assert [alert.severity for alert in supervisor.alerts] == ["warning", "critical"]
    assert len(supervisor.cache) == 0
    assert [event["kind"] for event in events if event["event"] == "performance_alert"] == [
        "memory",
        "memory",
    ]


def test_cpu_threshold_alert(tmp_path: Path) -> None:
    supervisor, _ = _supervisor(
        tmp_path, ScriptedSampler(10, cpu_percent=90.0), max_cpu_percent=80.0
    )

    supervisor.take_snapshot()

    alert = supervisor.alerts[-1]
    assert (alert.kind, alert.severity) == ("cpu", "warning")


def test_task_duration_alert(tmp_path: Path) -> None:
    clock = FakeClock()
    supervisor, _ = _supervisor(tmp_path, ScriptedSampler(10), clock, max_task_duration_ms=1000)

    supervisor.track_task_start("core:1")
    clock.now = 1.2
    elapsed = supervisor.track_task_end("core:1")

    assert elapsed == 1.2
    alert = supervisor.alerts[-1]
    assert (alert.kind, alert.severity, alert.task_key) == ("duration", "warning", "core:1")
    assert supervisor.track_task_end("core:1") == 0.0


def test_leak_detection_names_the_growing_category(tmp_path: Path) -> None:
    supervisor, _ = _supervisor(
        tmp_path,
        ScriptedSampler(100, 110, 125, 140),
        max_memory_mb=1000,
        leak_window=3,
        leak_threshold_mb=10,
    )

    supervisor.take_snapshot()
    supervisor.register("attempt-1", "assistant_attempt")
    supervisor.register("attempt-2", "assistant_attempt")
    supervisor.take_snapshot()
    supervisor.register("attempt-3", "assistant_attempt")
    supervisor.take_snapshot()

    leaks = [alert for alert in supervisor.alerts if alert.kind == "leak"]
    assert len(leaks) == 1
    assert leaks[0].category == "assistant_attempt"
    assert leaks[0].value == 25

    supervisor.take_snapshot()
    assert len([alert for alert in supervisor.alerts if alert.kind == "leak"]) == 1


def test_flat_memory_is_not_a_leak(tmp_path: Path) -> None:
    supervisor, _ = _supervisor(
        tmp_path, ScriptedSampler(100, 130, 130, 160), leak_window=3, leak_threshold_mb=10
    )

    for _ in range(3):
        supervisor.take_snapshot()

    assert supervisor.detect_leak() is None
    assert not [alert for alert in supervisor.alerts if alert.kind == "leak"]


def test_cleanup_session_is_idempotent(tmp_path: Path) -> None:
    supervisor, _ = _supervisor(tmp_path, ScriptedSampler(10))
    released: list[str] = []
    supervisor.register(
        "a", "assistant_attempt", session_id="s1", release=lambda: released.append("a")
    )
    supervisor.register("b", "assistant_attempt", session_id="s1")
    supervisor.register("w", "file_watcher")

    first = supervisor.cleanup_session("s1")
    second = supervisor.cleanup_session("s1")

    assert first.released == 2
    assert second.released == 0
    assert released == ["a"]
    assert [resource.resource_id for resource in supervisor.resources()] == ["w"]


def test_release_errors_are_collected(tmp_path: Path) -> None:
    supervisor, _ = _supervisor(tmp_path, ScriptedSampler(10))

    def explode() -> None:
        raise RuntimeError("already closed")

    supervisor.register("a", "assistant_attempt", session_id="s1", release=explode)
    result = supervisor.cleanup_session("s1")

    assert result.released == 0
    assert result.errors == ["a: already closed"]
    assert supervisor.resources() == []


def test_aggressive_cleanup_releases_stale_sessions_only(tmp_path: Path) -> None:
    clock = FakeClock()
    supervisor, _ = _supervisor(tmp_path, ScriptedSampler(10), clock)
    supervisor.register("old", "assistant_attempt", session_id="s-old")
    supervisor.register("current", "assistant_attempt", session_id="s-new")
    supervisor.register("watcher", "file_watcher")
    supervisor.bind_session("s-new")
    supervisor.cache.set("doc", "text")

    clock.now = 700
    result = supervisor.aggressive_cleanup()

    assert result.released == 2
    remaining = sorted(resource.resource_id for resource in supervisor.resources())
    assert remaining == ["current", "watcher"]


def test_report_summarizes_latest_snapshot(tmp_path: Path) -> None:
    supervisor, _ = _supervisor(tmp_path, ScriptedSampler(42))
    supervisor.register("w", "file_watcher")

    supervisor.take_snapshot()
    report = supervisor.report()

    assert report["latest"]["memory_mb"] == 42
    assert report["resources"]["file_watcher"] == 1
    assert report["cache"]["entries"] == 0

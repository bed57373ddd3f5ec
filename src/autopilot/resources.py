from __future__ import annotations

import asyncio
import gc
import os
import sys
import time
from collections import Counter, OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from autopilot.context import RuntimeContext
from autopilot.events import EngineEvent
from autopilot.models import utcnow_iso

Clock = Callable[[], float]
ReleaseCallback = Callable[[], None]

STALE_AGE_SECONDS = 600.0
STALE_IDLE_SECONDS = 300.0


@dataclass(slots=True, frozen=True)
class ResourceSample:
    memory_mb: float
    cpu_percent: float


class ProcessSampler:
    """Samples this process: resident memory and CPU share since the previous call."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._last_wall: float | None = None
        self._last_cpu: float | None = None

    @staticmethod
    def resident_memory_mb() -> float:
        try:
            with open("/proc/self/statm", encoding="ascii") as handle:
                resident_pages = int(handle.read().split()[1])
            return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
        except (OSError, ValueError, IndexError):
            import resource

            peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
            # ru_maxrss is bytes on macOS, kilobytes elsewhere
            divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
            return peak / divisor

    def __call__(self) -> ResourceSample:
        wall = self._clock()
        cpu = time.process_time()
        percent = 0.0
        if self._last_wall is not None and self._last_cpu is not None and wall > self._last_wall:
            percent = max(0.0, (cpu - self._last_cpu) / (wall - self._last_wall) * 100)
        self._last_wall, self._last_cpu = wall, cpu
        return ResourceSample(memory_mb=self.resident_memory_mb(), cpu_percent=percent)


Sampler = Callable[[], ResourceSample]


@dataclass(slots=True, frozen=True)
class ResourceSnapshot:
    at: float
    memory_mb: float
    cpu_percent: float
    categories: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_mb": round(self.memory_mb, 2),
            "cpu_percent": round(self.cpu_percent, 2),
            "categories": dict(self.categories),
        }


@dataclass(slots=True)
class PerformanceAlert:
    kind: str
    severity: str
    value: float
    threshold: float
    message: str
    category: str | None = None
    task_key: str | None = None
    at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "value": round(self.value, 2),
            "threshold": self.threshold,
            "message": self.message,
            "category": self.category,
            "task_key": self.task_key,
            "at": self.at,
        }


@dataclass(slots=True)
class ManagedResource:
    resource_id: str
    category: str
    name: str
    session_id: str | None = None
    release: ReleaseCallback | None = None
    created_at: float = 0.0
    last_accessed: float = 0.0


@dataclass(slots=True)
class CleanupResult:
    released: int = 0
    errors: list[str] = field(default_factory=list)
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "released": self.released, "errors": self.errors}


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    size_bytes: int
    expires_at: float


def _estimate_size(value: Any) -> int:
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    return sys.getsizeof(value)


class BoundedCache:
    """LRU cache bounded by entry count, total bytes and per-entry TTL."""

    def __init__(
        self,
        *,
        max_entries: int = 1000,
        max_bytes: int = 50 * 1024 * 1024,
        ttl_seconds: float = 300.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._bytes = 0
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def size_bytes(self) -> int:
        return self._bytes

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._bytes -= entry.size_bytes

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        if entry.expires_at <= self._clock():
            self._drop(key)
            self.expirations += 1
            self.misses += 1
            return default
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, *, size_bytes: int | None = None) -> bool:
        size = _estimate_size(value) if size_bytes is None else size_bytes
        self._drop(key)
        if size > self.max_bytes:
            return False
        self._entries[key] = _CacheEntry(value, size, self._clock() + self.ttl_seconds)
        self._bytes += size
        while len(self._entries) > self.max_entries or self._bytes > self.max_bytes:
            oldest = next(iter(self._entries))
            self._drop(oldest)
            self.evictions += 1
        return True

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        sentinel = object()
        value = self.get(key, sentinel)
        if value is sentinel:
            value = loader()
            self.set(key, value)
        return value

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            self._drop(key)
        self.expirations += len(expired)
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self._bytes = 0
        return count

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "bytes": self._bytes,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }


class ResourceSupervisor:
    """Samples memory and CPU, raises threshold alerts and tracks managed resources."""

    def __init__(
        self,
        context: RuntimeContext,
        *,
        sampler: Sampler | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.context = context
        self.settings = context.config.resources
        self.logger = context.logger.getChild("resources")
        self._clock = clock
        self._sampler = sampler or ProcessSampler(clock)
        self.cache = BoundedCache(
            max_entries=self.settings.cache_max_entries,
            max_bytes=int(self.settings.cache_max_mb * 1024 * 1024),
            ttl_seconds=self.settings.cache_ttl_ms / 1000,
            clock=clock,
        )
        history = max(60, self.settings.leak_window * 4)
        self.snapshots: deque[ResourceSnapshot] = deque(maxlen=history)
        self.alerts: deque[PerformanceAlert] = deque(maxlen=100)
        self._resources: dict[str, ManagedResource] = {}
        self._closed_sessions: set[str] = set()
        self._active_session: str | None = None
        self._active_task: tuple[str, float] | None = None
        self._duration_alerted = False
        self._leak_window_start = 0
        self._snapshot_count = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"supervisor:{self.context.workspace_id}"
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        interval = self.settings.snapshot_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                self.take_snapshot()
            except Exception:
                self.logger.exception("Resource snapshot failed")

    def bind_session(self, session_id: str | None) -> None:
        self._active_session = session_id

    def usage_by_category(self) -> dict[str, int]:
        counts = Counter(resource.category for resource in self._resources.values())
        counts["cache"] += len(self.cache)
        return dict(counts)

    def take_snapshot(self) -> ResourceSnapshot:
        sample = self._sampler()
        snapshot = ResourceSnapshot(
            at=self._clock(),
            memory_mb=sample.memory_mb,
            cpu_percent=sample.cpu_percent,
            categories=self.usage_by_category(),
        )
        self.snapshots.append(snapshot)
        self._snapshot_count += 1
        self.cache.purge_expired()
        self._check_thresholds(snapshot)
        leak = self.detect_leak()
        if leak is not None:
            self._raise(leak)
        return snapshot

    @staticmethod
    def _severity(value: float, threshold: float) -> str | None:
        if value >= threshold * 1.5:
            return "critical"
        if value > threshold:
            return "warning"
        return None

    def _check_thresholds(self, snapshot: ResourceSnapshot) -> None:
        severity = self._severity(snapshot.memory_mb, self.settings.max_memory_mb)
        if severity:
            self._raise(
                PerformanceAlert(
                    kind="memory",
                    severity=severity,
                    value=snapshot.memory_mb,
                    threshold=self.settings.max_memory_mb,
                    message=(
                        f"Memory {snapshot.memory_mb:.1f} MB exceeds "
                        f"{self.settings.max_memory_mb} MB"
                    ),
                )
            )
        severity = self._severity(snapshot.cpu_percent, self.settings.max_cpu_percent)
        if severity:
            self._raise(
                PerformanceAlert(
                    kind="cpu",
                    severity=severity,
                    value=snapshot.cpu_percent,
                    threshold=self.settings.max_cpu_percent,
                    message=(
                        f"CPU {snapshot.cpu_percent:.1f}% exceeds "
                        f"{self.settings.max_cpu_percent}%"
                    ),
                )
            )
        if self._active_task is not None and not self._duration_alerted:
            key, started = self._active_task
            alert = self._duration_alert(key, snapshot.at - started)
            if alert is not None:
                self._duration_alerted = True
                self._raise(alert)

    def _duration_alert(self, task_key: str, elapsed_seconds: float) -> PerformanceAlert | None:
        limit_ms = self.settings.max_task_duration_ms
        elapsed_ms = elapsed_seconds * 1000
        severity = self._severity(elapsed_ms, limit_ms)
        if severity is None:
            return None
        return PerformanceAlert(
            kind="duration",
            severity=severity,
            value=elapsed_ms,
            threshold=limit_ms,
            message=(
                f"Task {task_key} has run {elapsed_ms / 1000:.1f}s "
                f"(limit {limit_ms / 1000:.1f}s)"
            ),
            task_key=task_key,
        )

    def _raise(self, alert: PerformanceAlert) -> None:
        self.alerts.append(alert)
        if alert.severity == "critical":
            self.logger.error("Performance alert: %s", alert.message)
        else:
            self.logger.warning("Performance alert: %s", alert.message)
        self.context.events.emit(EngineEvent.PERFORMANCE_ALERT, **alert.to_dict())
        if alert.kind == "memory" and alert.severity == "critical":
            self.aggressive_cleanup()

    def track_task_start(self, task_key: str) -> None:
        self._active_task = (task_key, self._clock())
        self._duration_alerted = False

    def track_task_end(self, task_key: str) -> float:
        """Stop timing ``task_key``; returns its duration in seconds."""
        if self._active_task is None or self._active_task[0] != task_key:
            return 0.0
        elapsed = self._clock() - self._active_task[1]
        self._active_task = None
        if not self._duration_alerted:
            alert = self._duration_alert(task_key, elapsed)
            if alert is not None:
                self._raise(alert)
        self._duration_alerted = False
        return elapsed

    def detect_leak(self) -> PerformanceAlert | None:
        """Flag ``leak_window`` rising snapshots since the last cleanup.

        The memory growth across the window must pass ``leak_threshold_mb``. The category
        whose resource count grew most is implicated.
        """
        window = self.settings.leak_window
        available = self._snapshot_count - self._leak_window_start
        if available < window:
            return None
        recent = list(self.snapshots)[-window:]
        if len(recent) < window:
            return None
        rising = all(
            later.memory_mb > earlier.memory_mb for earlier, later in zip(recent, recent[1:])
        )
        growth = recent[-1].memory_mb - recent[0].memory_mb
        if not rising or growth <= self.settings.leak_threshold_mb:
            return None
        deltas = {
            category: recent[-1].categories.get(category, 0) - recent[0].categories.get(category, 0)
            for category in set(recent[0].categories) | set(recent[-1].categories)
        }
        grown = {category: delta for category, delta in deltas.items() if delta > 0}
        category = max(sorted(grown), key=lambda name: grown[name]) if grown else "unknown"
        self._leak_window_start = self._snapshot_count
        return PerformanceAlert(
            kind="leak",
            severity="warning",
            value=growth,
            threshold=self.settings.leak_threshold_mb,
            message=(
                f"Suspected leak: memory rose {growth:.1f} MB over {window} snapshots "
                f"(category: {category})"
            ),
            category=category,
        )

    def register(
        self,
        resource_id: str,
        category: str,
        *,
        name: str | None = None,
        session_id: str | None = None,
        release: ReleaseCallback | None = None,
    ) -> ManagedResource:
        now = self._clock()
        resource = ManagedResource(
            resource_id=resource_id,
            category=category,
            name=name or resource_id,
            session_id=session_id,
            release=release,
            created_at=now,
            last_accessed=now,
        )
        self._resources[resource_id] = resource
        return resource

    def touch(self, resource_id: str) -> None:
        resource = self._resources.get(resource_id)
        if resource is not None:
            resource.last_accessed = self._clock()

    def unregister(self, resource_id: str) -> bool:
        return self._resources.pop(resource_id, None) is not None

    def resources(
        self, *, category: str | None = None, session_id: str | None = None
    ) -> list[ManagedResource]:
        return [
            resource
            for resource in self._resources.values()
            if (category is None or resource.category == category)
            and (session_id is None or resource.session_id == session_id)
        ]

    def _release(self, resources: list[ManagedResource], result: CleanupResult) -> None:
        for resource in resources:
            self._resources.pop(resource.resource_id, None)
            if resource.release is None:
                result.released += 1
                continue
            try:
                resource.release()
                result.released += 1
            except Exception as exc:
                self.logger.warning("Releasing %s failed: %s", resource.name, exc)
                result.errors.append(f"{resource.name}: {exc}")

    def cleanup_session(self, session_id: str) -> CleanupResult:
        """Release every resource tagged with ``session_id``. Safe to call repeatedly."""
        result = CleanupResult(session_id=session_id)
        self._release(self.resources(session_id=session_id), result)
        self._closed_sessions.add(session_id)
        if self._active_session == session_id:
            self._active_session = None
        self._leak_window_start = self._snapshot_count
        if result.released or result.errors:
            self.logger.info(
                "Session %s cleanup released %s resource(s)", session_id, result.released
            )
        return result

    def aggressive_cleanup(self) -> CleanupResult:
        """Purge the cache and release stale or orphaned session resources."""
        result = CleanupResult()
        result.released += self.cache.clear()
        now = self._clock()
        victims = [
            resource
            for resource in self._resources.values()
            if resource.session_id is not None
            and (
                resource.session_id in self._closed_sessions
                or (
                    resource.session_id != self._active_session
                    and now - resource.created_at > STALE_AGE_SECONDS
                    and now - resource.last_accessed > STALE_IDLE_SECONDS
                )
            )
        ]
        self._release(victims, result)
        gc.collect()
        self._leak_window_start = self._snapshot_count
        self.logger.warning("Aggressive cleanup released %s item(s)", result.released)
        return result

    def report(self) -> dict[str, Any]:
        latest = self.snapshots[-1].to_dict() if self.snapshots else None
        return {
            "latest": latest,
            "alerts": [alert.to_dict() for alert in self.alerts],
            "resources": self.usage_by_category(),
            "cache": self.cache.stats(),
        }

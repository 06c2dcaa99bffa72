from __future__ import annotations

import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

V = TypeVar("V")


class _Miss:
    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass
class CacheEntry(Generic[V]):
    key: str
    value: V
    inserted_at: float
    expires_at: float
    version: int = 0


@dataclass
class _InFlight:
    future: Future = field(default_factory=Future)
    stale: bool = False


@dataclass
class _PendingPattern:
    regex: re.Pattern[str]
    version: int

    def covers(self, entry: CacheEntry[Any]) -> bool:
        return entry.version < self.version and self.regex.match(entry.key) is not None


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    loads: int
    size: int
    pending_patterns: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) if total else 0.0


def compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


class TtlCache:
    """Read-through TTL cache with single-flight loads and batched wildcard invalidation.

    Exact-key invalidations apply immediately. Wildcard patterns are queued and
    applied by ``sweep()``; until then any entry stored before the pattern was
    queued reads as a miss, so a queued invalidation never serves a stale value.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self._inflight: dict[str, _InFlight] = {}
        self._pending: dict[str, _PendingPattern] = {}
        self._version = 0
        self._hits = 0
        self._misses = 0
        self._loads = 0
        self._sweeper: threading.Thread | None = None
        self._stop = threading.Event()

    def get(self, key: str) -> Any:
        with self._lock:
            return self._lookup(key)

    def get_or_load(self, key: str, loader: Callable[[], V], ttl: float | None = None) -> V:
        with self._lock:
            value = self._lookup(key)
            if value is not MISS:
                return value
            flight = self._inflight.get(key)
            owner = flight is None
            if owner:
                flight = _InFlight()
                self._inflight[key] = flight

        if not owner:
            return flight.future.result()

        try:
            value = loader()
        except BaseException as exc:
            with self._lock:
                self._release(key, flight)
            flight.future.set_exception(exc)
            raise

        with self._lock:
            self._release(key, flight)
            self._loads += 1
            if not flight.stale:
                self._store(key, value, ttl)
        flight.future.set_result(value)
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            self._store(key, value, ttl)

    def invalidate(self, pattern: str) -> None:
        with self._lock:
            if "*" not in pattern:
                self._entries.pop(pattern, None)
                self._detach_flight(pattern)
                return
            self._version += 1
            existing = self._pending.get(pattern)
            regex = existing.regex if existing else compile_pattern(pattern)
            self._pending[pattern] = _PendingPattern(regex=regex, version=self._version)
            for key in [k for k in self._inflight if regex.match(k)]:
                self._detach_flight(key)

    def sweep(self) -> int:
        with self._lock:
            if not self._pending:
                return 0
            patterns = list(self._pending.values())
            self._pending.clear()
            doomed = [key for key, entry in self._entries.items() if any(p.covers(entry) for p in patterns)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._pending.clear()
            for key in list(self._inflight):
                self._detach_flight(key)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                loads=self._loads,
                size=len(self._entries),
                pending_patterns=len(self._pending),
            )

    def start_sweeper(self, interval_seconds: float = 1.0) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _run() -> None:
            while not self._stop.wait(interval_seconds):
                self.sweep()

        self._sweeper = threading.Thread(target=_run, name="cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
        self.sweep()

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return MISS
        if entry.expires_at <= self._clock() or any(p.covers(entry) for p in self._pending.values()):
            del self._entries[key]
            self._misses += 1
            return MISS
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.value

    def _detach_flight(self, key: str) -> None:
        # Readers arriving after an invalidation start a fresh load instead of joining this one.
        flight = self._inflight.pop(key, None)
        if flight is not None:
            flight.stale = True

    def _release(self, key: str, flight: _InFlight) -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]

    def _store(self, key: str, value: Any, ttl: float | None) -> None:
        now = self._clock()
        self._version += 1
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            expires_at=now + (self.ttl_seconds if ttl is None else ttl),
            version=self._version,
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

"""
trustguard.cache — Owned, injectable key/value caches.

The Trust Score Manager and the Sybil Detection Engine each take a
KeyedCache in their constructor instead of sharing process-wide maps, so a
test (or a second engine in the same process) gets its own isolated state.
Neither cache is a source of truth; both are rebuilt from the DataStore.

Entries may expire after a period without access (``idle_ttl``); expired
entries are dropped lazily on ``get`` and eagerly by ``cleanup_expired``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, Optional, TypeVar

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    created_at: float
    last_accessed: float
    access_count: int = 0


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    expirations: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "expirations": self.expirations,
            "invalidations": self.invalidations,
            "hit_rate": round(self.hit_rate, 4),
        }


class KeyedCache(Generic[V]):
    """
    Thread-safe map keyed by user id with optional idle expiry.

    Usage:
        scores: KeyedCache[TrustScore] = KeyedCache()
        profiles: KeyedCache[UserBehaviorProfile] = KeyedCache(idle_ttl=86400)
    """

    def __init__(self, idle_ttl: Optional[float] = None,
                 clock: Callable[[], float] = time.time):
        if idle_ttl is not None and idle_ttl <= 0:
            raise ValueError("idle_ttl must be positive or None")
        self._idle_ttl = idle_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry[V]] = {}
        self._lock = threading.RLock()
        self._stats = CacheStats()

    @property
    def stats(self) -> CacheStats:
        return self._stats

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not None

    def _expired(self, entry: CacheEntry[V], now: float) -> bool:
        return self._idle_ttl is not None and now - entry.last_accessed > self._idle_ttl

    def get(self, key: str) -> Optional[V]:
        """Return the value and refresh its idle timer, or None."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if self._expired(entry, now):
                del self._entries[key]
                self._stats.expirations += 1
                self._stats.misses += 1
                return None
            entry.last_accessed = now
            entry.access_count += 1
            self._stats.hits += 1
            return entry.value

    def peek(self, key: str) -> Optional[V]:
        """Return the value without touching the idle timer or stats."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, self._clock()):
                return None
            return entry.value

    def set(self, key: str, value: V) -> None:
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(value=value, created_at=now, last_accessed=now)
            self._stats.sets += 1

    def replace(self, key: str, value: V) -> bool:
        """Swap the value of a live entry without refreshing its idle timer."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, self._clock()):
                return False
            entry.value = value
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                self._stats.invalidations += 1
                return True
            return False

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def items(self) -> Iterator[tuple[str, V]]:
        """Snapshot of live entries; safe to iterate while others mutate the cache."""
        now = self._clock()
        with self._lock:
            snapshot = [(k, e.value) for k, e in self._entries.items() if not self._expired(e, now)]
        return iter(snapshot)

    def clear(self) -> None:
        with self._lock:
            self._stats.invalidations += len(self._entries)
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """Remove entries idle longer than ``idle_ttl``. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if self._expired(e, now)]
            for k in expired:
                del self._entries[k]
            self._stats.expirations += len(expired)
            return len(expired)

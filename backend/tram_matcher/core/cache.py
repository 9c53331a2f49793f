"""Expiring LRU cache and in-flight request deduplication for upstream fetches."""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 10.0
DEFAULT_MAX_SIZE = 1000
DEFAULT_DEDUPE_WINDOW_SECONDS = 5.0


@dataclass
class _InFlight:
    task: asyncio.Future
    started: float


class RequestDeduplicator:
    """Collapses concurrent calls for the same key into one upstream request.

    Callers arriving within `window` seconds of the first share its outcome,
    success or failure. The key is released as soon as the request settles.
    """

    def __init__(
        self,
        window: float = DEFAULT_DEDUPE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self._clock = clock
        self._active: dict[str, _InFlight] = {}

    def __len__(self) -> int:
        return len(self._active)

    def __contains__(self, key: str) -> bool:
        return key in self._active

    async def dedupe(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        now = self._clock()
        existing = self._active.get(key)
        if existing is not None and now - existing.started < self.window:
            return await asyncio.shield(existing.task)

        entry = _InFlight(task=asyncio.ensure_future(fn()), started=now)
        self._active[key] = entry
        entry.task.add_done_callback(lambda _: self._release(key, entry))
        # Shielded so one caller giving up doesn't cancel the fetch for the rest
        return await asyncio.shield(entry.task)

    def _release(self, key: str, entry: _InFlight) -> None:
        if self._active.get(key) is entry:
            del self._active[key]
        if not entry.task.cancelled():
            entry.task.exception()  # mark retrieved; waiters get it re-raised

    def cleanup(self) -> int:
        """Forget registrations older than the window."""
        now = self._clock()
        expired = [k for k, e in self._active.items() if now - e.started >= self.window]
        for key in expired:
            del self._active[key]
        return len(expired)

    def clear(self) -> None:
        self._active.clear()


@dataclass
class CacheEntry(Generic[T]):
    value: T
    timestamp: float
    ttl: float
    access_count: int
    last_accessed: float


class TTLCache(Generic[T]):
    """String-keyed cache with per-entry TTL and least-recently-used eviction."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        name: str = "ttl-cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl < 0:
            raise ValueError("default_ttl must be >= 0")
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.name = name
        self._clock = clock
        # Ordered least- to most-recently accessed
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._pending = RequestDeduplicator(window=float("inf"), clock=clock)
        self._scheduler: AsyncIOScheduler | None = None
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @property
    def job_id(self) -> str:
        return f"{self.name}:cleanup"

    def _fresh(self, entry: CacheEntry[T], now: float) -> bool:
        return now - entry.timestamp < entry.ttl

    async def get(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> T:
        """Return the cached value for key, producing and storing it on a miss."""
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and self._fresh(entry, now):
            entry.access_count += 1
            entry.last_accessed = now
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

        self._misses += 1
        value = await self._pending.dedupe(key, producer)
        self._store(key, value, self.default_ttl if ttl is None else ttl)
        return value

    def _store(self, key: str, value: T, ttl: float) -> None:
        now = self._clock()
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("%s: evicted %s", self.name, evicted)
        self._entries[key] = CacheEntry(
            value=value, timestamp=now, ttl=ttl, access_count=1, last_accessed=now
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Drop every entry whose age has reached its TTL."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not self._fresh(e, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("%s: swept %d expired entries", self.name, len(expired))
        return len(expired)

    def start(self, scheduler: AsyncIOScheduler) -> None:
        """Sweep expired entries every default TTL on the given scheduler."""
        if self._scheduler is not None or self.default_ttl <= 0:
            return
        scheduler.add_job(
            self.cleanup,
            "interval",
            seconds=self.default_ttl,
            id=self.job_id,
            name=f"Sweep expired {self.name} entries",
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler = scheduler

    def close(self) -> None:
        if self._scheduler is not None:
            if self._scheduler.get_job(self.job_id):
                self._scheduler.remove_job(self.job_id)
            self._scheduler = None
        self.clear()

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "entries": [
                {"key": k, "access_count": e.access_count, "age": now - e.timestamp}
                for k, e in self._entries.items()
            ],
        }

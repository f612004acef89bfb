"""In-memory query cache.

Provides:
- QueryCache: keyed entries with TTL staleness/eviction, LRU capacity
  eviction, hit/miss statistics and per-key change listeners
- get_default_cache() / set_default_cache(): the shared instance used when
  no cache is injected explicitly
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, TypeVar

from querysync.duration import now_ms, parse_duration, to_seconds
from querysync.keys import matches_pattern
from querysync.types import (
    CacheEntry,
    CacheEvent,
    CacheEventCallback,
    CacheEventType,
    CacheListener,
    CacheStats,
    Duration,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


class QueryCache:
    """In-memory cache of query results.

    Reads and writes are synchronous and never raise for well-formed keys.
    Listener and event callbacks run inline; their exceptions are logged
    and swallowed so one bad subscriber cannot block the others.

    Expired entries are swept by a self-rescheduling timer armed on the
    running event loop. Each sweep is scheduled for the next moment an
    entry outlives its cache time, clamped to ``[cleanup_floor,
    cleanup_ceiling]``; an empty cache waits ``idle_cleanup_interval``.
    """

    def __init__(
        self,
        *,
        max_size: int = 100,
        default_stale_time: Duration = "5m",
        default_cache_time: Duration = "30m",
        cleanup_floor: Duration = "1m",
        cleanup_ceiling: Duration = "30m",
        idle_cleanup_interval: Duration = "30m",
        on_event: CacheEventCallback | None = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._default_stale_time = parse_duration(default_stale_time)
        self._default_cache_time = parse_duration(default_cache_time)
        self._cleanup_floor = parse_duration(cleanup_floor)
        self._cleanup_ceiling = max(self._cleanup_floor, parse_duration(cleanup_ceiling))
        self._idle_cleanup_interval = parse_duration(idle_cleanup_interval)
        self._on_event = on_event

        self._entries: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self._listeners: dict[str, list[CacheListener]] = {}

        self._hit_count = 0
        self._miss_count = 0
        self._eviction_count = 0

        self._cleanup_handle: asyncio.TimerHandle | None = None
        self._cleanup_loop: asyncio.AbstractEventLoop | None = None
        self._next_cleanup_time: int | None = None
        self._disposed = False

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: str) -> CacheEntry[Any] | None:
        """Get an entry, treating an expired one as a miss.

        Hits move the key to the most-recently-used position.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._record_miss(key)
            return None

        if entry.should_evict:
            logger.debug("Evicting expired entry for key %s", key)
            del self._entries[key]
            self._eviction_count += 1
            self._emit(CacheEventType.EVICT, key, entry)
            self._record_miss(key)
            self._notify(key, None)
            return None

        self._entries.move_to_end(key)
        self._hit_count += 1
        self._emit(CacheEventType.HIT, key, entry)
        return entry

    def peek(self, key: str) -> CacheEntry[Any] | None:
        """Read an entry without touching recency, statistics or eviction."""
        return self._entries.get(key)

    @property
    def keys(self) -> list[str]:
        return list(self._entries)

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, key: str) -> bool:
        return key in self._entries

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def stats(self) -> CacheStats:
        now = now_ms()
        return CacheStats(
            total_entries=len(self._entries),
            stale_entries=sum(1 for e in self._entries.values() if e.is_stale_at(now)),
            hit_count=self._hit_count,
            miss_count=self._miss_count,
            eviction_count=self._eviction_count,
        )

    @property
    def next_cleanup_time(self) -> int | None:
        """Timestamp (ms) of the next scheduled sweep, if one is armed."""
        return self._next_cleanup_time

    def reset_stats(self) -> None:
        self._hit_count = 0
        self._miss_count = 0
        self._eviction_count = 0

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(self, key: str, entry: CacheEntry[Any], *, notify: bool = True) -> None:
        """Store an entry as most recently used and notify its listeners.

        Overflowing ``max_size`` silently evicts the least recently used keys.
        """
        self._entries[key] = entry
        self._entries.move_to_end(key)
        self._emit(CacheEventType.SET, key, entry)
        self._evict_overflow()
        if notify:
            self._notify(key, entry)
        self._arm_cleanup(entry)

    def set_data(
        self,
        key: str,
        data: T,
        *,
        stale_time: Duration | None = None,
        cache_time: Duration | None = None,
        fetched_at: int | None = None,
        notify: bool = True,
    ) -> CacheEntry[T]:
        """Build a data entry with cache defaults and store it."""
        entry: CacheEntry[T] = CacheEntry(
            data=data,
            fetched_at=now_ms() if fetched_at is None else fetched_at,
            stale_time=self._resolve(stale_time, self._default_stale_time),
            cache_time=self._resolve(cache_time, self._default_cache_time),
        )
        self.set(key, entry, notify=notify)
        return entry

    def set_error(
        self,
        key: str,
        error: BaseException,
        *,
        stack_trace: str | None = None,
        stale_time: Duration | None = None,
        cache_time: Duration | None = None,
        fetched_at: int | None = None,
        notify: bool = True,
    ) -> CacheEntry[Any]:
        """Build an error entry with cache defaults and store it."""
        entry: CacheEntry[Any] = CacheEntry(
            data=None,
            fetched_at=now_ms() if fetched_at is None else fetched_at,
            stale_time=self._resolve(stale_time, self._default_stale_time),
            cache_time=self._resolve(cache_time, self._default_cache_time),
            error=error,
            stack_trace=stack_trace,
        )
        self.set(key, entry, notify=notify)
        return entry

    def remove(self, key: str, *, notify: bool = True) -> bool:
        """Remove an entry; listeners receive ``None``."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._emit(CacheEventType.EVICT, key, entry)
        if notify:
            self._notify(key, None)
        return True

    def clear(self) -> None:
        """Remove every entry; each key's listeners receive ``None``."""
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._emit(CacheEventType.CLEAR, key)
        for key in keys:
            self._notify(key, None)

    def remove_by_pattern(self, pattern: str, *, notify: bool = True) -> int:
        """Remove every key containing ``pattern`` (substring, not regex)."""
        doomed = [key for key in self._entries if matches_pattern(key, pattern)]
        for key in doomed:
            self.remove(key, notify=notify)
        return len(doomed)

    def mark_stale_by_pattern(self, pattern: str) -> int:
        """Make every key containing ``pattern`` stale, keeping its data.

        Recency order is preserved and listeners are not notified.
        """
        now = now_ms()
        marked = 0
        for key, entry in list(self._entries.items()):
            if matches_pattern(key, pattern):
                stale = entry.as_stale(now)
                self._entries[key] = stale
                self._emit(CacheEventType.SET, key, stale)
                marked += 1
        return marked

    def cleanup(self) -> int:
        """Remove every expired entry now. Returns the number removed."""
        now = now_ms()
        expired = [key for key, e in self._entries.items() if e.should_evict_at(now)]
        for key in expired:
            self._eviction_count += 1
            self.remove(key)
        return len(expired)

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, key: str, callback: CacheListener) -> None:
        self._listeners.setdefault(key, []).append(callback)

    def remove_listener(self, key: str, callback: CacheListener) -> None:
        listeners = self._listeners.get(key)
        if not listeners:
            return
        try:
            listeners.remove(callback)
        except ValueError:
            pass
        if not listeners:
            del self._listeners[key]

    def remove_all_listeners(self, key: str) -> None:
        self._listeners.pop(key, None)

    def listener_count(self, key: str) -> int:
        return len(self._listeners.get(key, ()))

    def dispose(self) -> None:
        """Cancel the cleanup timer, drop listeners and clear all entries."""
        self._disposed = True
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
        self._cleanup_handle = None
        self._cleanup_loop = None
        self._next_cleanup_time = None
        self._listeners.clear()
        self.clear()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _resolve(duration: Duration | None, default: int) -> int:
        return default if duration is None else parse_duration(duration)

    def _record_miss(self, key: str) -> None:
        self._miss_count += 1
        self._emit(CacheEventType.MISS, key)

    def _evict_overflow(self) -> None:
        while len(self._entries) > self._max_size:
            oldest_key, oldest = self._entries.popitem(last=False)
            self._eviction_count += 1
            logger.debug("Capacity eviction of key %s", oldest_key)
            self._emit(CacheEventType.EVICT, oldest_key, oldest)
            self._notify(oldest_key, None)

    def _notify(self, key: str, entry: CacheEntry[Any] | None) -> None:
        # Snapshot: callbacks may unsubscribe while being notified
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(entry)
            except Exception:
                logger.exception("Cache listener error for key %s", key)

    def _emit(
        self,
        type: CacheEventType,
        key: str,
        entry: CacheEntry[Any] | None = None,
    ) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(CacheEvent(type=type, key=key, timestamp=now_ms(), entry=entry))
        except Exception:
            logger.exception("Cache event callback error for key %s", key)

    def _cleanup_delay(self) -> int:
        """Milliseconds until the next sweep should run."""
        if not self._entries:
            return self._idle_cleanup_interval
        now = now_ms()
        next_eviction = min(e.evicts_at for e in self._entries.values())
        # should_evict is a strict comparison, hence the extra millisecond
        delay = next_eviction - now + 1
        return max(self._cleanup_floor, min(self._cleanup_ceiling, delay))

    def _arm_cleanup(self, entry: CacheEntry[Any]) -> None:
        """Schedule a sweep if none is armed or ``entry`` expires sooner."""
        if self._disposed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next write inside a running loop arms the timer
            return
        if (
            self._cleanup_handle is None
            or self._cleanup_loop is not loop
            or self._next_cleanup_time is None
        ):
            self._schedule_cleanup(loop)
            return
        if entry.evicts_at >= self._next_cleanup_time:
            return
        # Only ever move an armed sweep earlier
        delay = self._cleanup_delay()
        if now_ms() + delay < self._next_cleanup_time:
            self._schedule_cleanup(loop, delay)

    def _schedule_cleanup(
        self, loop: asyncio.AbstractEventLoop, delay: int | None = None
    ) -> None:
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
        if delay is None:
            delay = self._cleanup_delay()
        self._next_cleanup_time = now_ms() + delay
        self._cleanup_loop = loop
        self._cleanup_handle = loop.call_later(to_seconds(delay), self._run_cleanup)

    def _run_cleanup(self) -> None:
        self._cleanup_handle = None
        removed = self.cleanup()
        logger.debug("Cleanup sweep removed %d expired entries", removed)
        if not self._disposed and self._cleanup_loop is not None:
            self._schedule_cleanup(self._cleanup_loop)

    def __repr__(self) -> str:
        return f"QueryCache(size: {self.size}/{self._max_size}, stats: {self.stats})"


_default_cache: QueryCache | None = None


def get_default_cache() -> QueryCache:
    """Return the shared cache, creating it on first use."""
    global _default_cache
    if _default_cache is None:
        _default_cache = QueryCache()
    return _default_cache


def set_default_cache(cache: QueryCache | None) -> None:
    """Replace (or with ``None`` reset) the shared cache."""
    global _default_cache
    _default_cache = cache


__all__ = ["QueryCache", "get_default_cache", "set_default_cache"]

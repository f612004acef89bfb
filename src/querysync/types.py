"""Core types for the querysync engine."""

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Generic,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from querysync.duration import now_ms

T = TypeVar("T")

# Duration type alias
Duration = str | int  # "30s", "5m", "2h", "1d" or milliseconds

# Parameterized resources use a tuple key, normalized by querysync.keys
CacheKey = str | tuple[Any, ...]

QueryFn = Callable[[], Awaitable[T]]


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached query result with timing metadata.

    ``data`` and ``error`` are mutually exclusive in practice; both ``None``
    means the entry is pending. Times are Unix timestamps / spans in ms.
    """

    data: T | None
    fetched_at: int
    stale_time: int
    cache_time: int
    error: BaseException | None = None
    stack_trace: str | None = None

    def age(self, now: int | None = None) -> int:
        """Milliseconds elapsed since the entry was fetched."""
        return (now_ms() if now is None else now) - self.fetched_at

    def is_stale_at(self, now: int | None = None) -> bool:
        return self.age(now) > self.stale_time

    def should_evict_at(self, now: int | None = None) -> bool:
        return self.age(now) > self.cache_time

    @property
    def is_stale(self) -> bool:
        """True once the data should be refreshed in the background."""
        return self.is_stale_at()

    @property
    def should_evict(self) -> bool:
        """True once the entry has outlived its cache time."""
        return self.should_evict_at()

    @property
    def evicts_at(self) -> int:
        """Timestamp after which ``should_evict`` holds."""
        return self.fetched_at + self.cache_time

    @property
    def has_data(self) -> bool:
        return self.data is not None and self.error is None

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def as_stale(self, now: int | None = None) -> CacheEntry[T]:
        """Copy whose ``fetched_at`` is pushed just past ``stale_time``.

        The data is kept, so readers can still display it while a
        refetch runs. Entries with ``cache_time <= stale_time`` become
        evictable as well.
        """
        now = now_ms() if now is None else now
        fetched_at = min(self.fetched_at, now - self.stale_time - 1)
        return dataclasses.replace(self, fetched_at=fetched_at)

    def replace(self, **changes: Any) -> CacheEntry[T]:
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Cache statistics for monitoring and debugging."""

    total_entries: int
    stale_entries: int
    hit_count: int
    miss_count: int
    eviction_count: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hit_count + self.miss_count
        return self.hit_count / lookups if lookups else 0.0

    def __str__(self) -> str:
        return (
            f"CacheStats(entries: {self.total_entries}, "
            f"stale: {self.stale_entries}, "
            f"hitRate: {self.hit_rate * 100:.1f}%, "
            f"evictions: {self.eviction_count})"
        )


class CacheEventType(Enum):
    HIT = "hit"
    MISS = "miss"
    SET = "set"
    EVICT = "evict"
    CLEAR = "clear"


@dataclass(frozen=True, slots=True)
class CacheEvent:
    """Cache event for monitoring and debugging."""

    type: CacheEventType
    key: str
    timestamp: int
    entry: CacheEntry[Any] | None = None


CacheListener = Callable[[CacheEntry[Any] | None], None]
CacheEventCallback = Callable[[CacheEvent], None]


@runtime_checkable
class CacheAccessor(Protocol):
    """The cache capability handed to mutation runners and hooks."""

    def get_query_data(self, key: CacheKey) -> Any | None:
        """Return cached data for a key, or None."""
        ...

    def set_query_data(self, key: CacheKey, data: Any) -> None:
        """Write data for a key, notifying its subscribers."""
        ...

    def invalidate_queries(self, pattern: str, *, mark_as_stale: bool = False) -> int:
        """Invalidate every key containing ``pattern``."""
        ...

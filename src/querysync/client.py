"""Composition root: one cache, shared runners, cache introspection."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from querysync.cache import QueryCache, get_default_cache
from querysync.duration import parse_duration
from querysync.infinite import InfiniteQueryRunner, PageFn
from querysync.keys import matches_pattern, query_key
from querysync.lifecycle import FocusSignal, LifecycleSignal
from querysync.mutation import MutationRunner
from querysync.options import InfiniteQueryOptions, MutationOptions, QueryOptions
from querysync.query import QueryRunner
from querysync.types import CacheEntry, CacheKey, CacheStats, Duration, QueryFn

T = TypeVar("T")
P = TypeVar("P")
V = TypeVar("V")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Registration:
    runner: QueryRunner[Any]
    refs: int = 1


def _normalize(key: CacheKey) -> str:
    return key if isinstance(key, str) else query_key(key)


class QueryClient:
    """Owns the shared cache and hands out one runner per key.

    Usage:
        client = QueryClient(lifecycle=AppLifecycle())
        users = client.query("users", fetch_users)
        await users.refetch()
        ...
        client.release(users)

    Runners returned by ``query()`` / ``infinite_query()`` are mounted and
    reference counted: repeated requests for a key share one runner, and the
    runner is disposed when ``release()`` drops the last reference.
    """

    def __init__(
        self,
        cache: QueryCache | None = None,
        *,
        lifecycle: LifecycleSignal | None = None,
        focus: FocusSignal | None = None,
        default_options: QueryOptions[Any] | None = None,
    ) -> None:
        self._cache = cache if cache is not None else get_default_cache()
        self._lifecycle = lifecycle
        self._focus = focus
        self._default_options: QueryOptions[Any] = (
            default_options if default_options is not None else QueryOptions()
        )
        self._registry: dict[str, _Registration] = {}

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def default_options(self) -> QueryOptions[Any]:
        return self._default_options

    # -------------------------------------------------------------------------
    # Runners
    # -------------------------------------------------------------------------

    def query(
        self,
        key: CacheKey,
        fn: QueryFn[T],
        options: QueryOptions[T] | None = None,
    ) -> QueryRunner[T]:
        """Return the shared runner for ``key``, creating and mounting it."""
        cache_key = _normalize(key)
        registration = self._registry.get(cache_key)
        if registration is not None:
            registration.refs += 1
            return registration.runner

        runner: QueryRunner[T] = QueryRunner(
            cache_key,
            fn,
            options if options is not None else self._default_options,
            cache=self._cache,
            lifecycle=self._lifecycle,
            focus=self._focus,
        )
        self._register(cache_key, runner)
        return runner

    def infinite_query(
        self,
        key: CacheKey,
        fn: PageFn[P, T],
        initial_page_param: P,
        options: InfiniteQueryOptions[T, P],
    ) -> InfiniteQueryRunner[T, P]:
        """Return the shared paged runner for ``key``, creating and mounting it."""
        cache_key = _normalize(key)
        registration = self._registry.get(cache_key)
        if registration is not None:
            if not isinstance(registration.runner, InfiniteQueryRunner):
                raise TypeError(f"Key {cache_key!r} is registered to a plain query")
            registration.refs += 1
            return registration.runner

        runner: InfiniteQueryRunner[T, P] = InfiniteQueryRunner(
            cache_key,
            fn,
            initial_page_param,
            options,
            cache=self._cache,
            lifecycle=self._lifecycle,
            focus=self._focus,
        )
        self._register(cache_key, runner)
        return runner

    def mutation(
        self,
        fn: Callable[[V], Awaitable[T]],
        options: MutationOptions[T, V] | None = None,
    ) -> MutationRunner[T, V]:
        """Create a mutation runner wired to this client's cache."""
        return MutationRunner(fn, options, accessor=self)

    def release(self, runner_or_key: QueryRunner[Any] | CacheKey) -> bool:
        """Drop one reference. Returns True if the runner was disposed."""
        if isinstance(runner_or_key, QueryRunner):
            cache_key = runner_or_key.key
        else:
            cache_key = _normalize(runner_or_key)
        registration = self._registry.get(cache_key)
        if registration is None:
            return False
        registration.refs -= 1
        if registration.refs > 0:
            return False
        del self._registry[cache_key]
        registration.runner.dispose()
        return True

    def get_runner(self, key: CacheKey) -> QueryRunner[Any] | None:
        registration = self._registry.get(_normalize(key))
        return registration.runner if registration is not None else None

    def _register(self, cache_key: str, runner: QueryRunner[Any]) -> None:
        self._registry[cache_key] = _Registration(runner)
        logger.debug("Registered runner for %s", cache_key)
        runner.mount()

    # -------------------------------------------------------------------------
    # Cache access
    # -------------------------------------------------------------------------

    def get_query_data(self, key: CacheKey) -> Any | None:
        entry = self._cache.get(_normalize(key))
        if entry is None or not entry.has_data:
            return None
        return entry.data

    def get_cache_entry(self, key: CacheKey) -> CacheEntry[Any] | None:
        return self._cache.get(_normalize(key))

    def has_query_data(self, key: CacheKey) -> bool:
        entry = self._cache.peek(_normalize(key))
        return entry is not None and entry.has_data and not entry.should_evict

    def set_query_data(
        self,
        key: CacheKey,
        data: Any,
        *,
        stale_time: Duration | None = None,
        cache_time: Duration | None = None,
    ) -> None:
        """Write ``data`` for ``key``; subscribed runners move to ``Success``.

        Durations default to the registered runner's options, then to the
        client defaults.
        """
        cache_key = _normalize(key)
        registration = self._registry.get(cache_key)
        options = registration.runner.options if registration else self._default_options
        self._cache.set_data(
            cache_key,
            data,
            stale_time=parse_duration(options.stale_time if stale_time is None else stale_time),
            cache_time=parse_duration(options.cache_time if cache_time is None else cache_time),
        )

    def invalidate_queries(self, pattern: str, *, mark_as_stale: bool = False) -> int:
        """Invalidate every key containing ``pattern``.

        By default the entries are removed, so the next read misses and
        mounted runners refetch through the eviction path. With
        ``mark_as_stale`` the data is kept but made stale and matching
        registered runners refetch in the background.
        """
        if not mark_as_stale:
            return self._cache.remove_by_pattern(pattern)

        count = self._cache.mark_stale_by_pattern(pattern)
        for cache_key, registration in list(self._registry.items()):
            runner = registration.runner
            if matches_pattern(cache_key, pattern) and runner.is_active:
                runner.schedule_refetch()
        logger.debug("Invalidated %d entries matching %r", count, pattern)
        return count

    def remove_queries(self, pattern: str) -> int:
        return self._cache.remove_by_pattern(pattern)

    def invalidate_all(self) -> None:
        self._cache.clear()

    def get_cache_stats(self) -> CacheStats:
        return self._cache.stats

    def get_cache_keys(self) -> list[str]:
        return self._cache.keys

    def clear_cache(self) -> None:
        self._cache.clear()

    def cleanup_cache(self) -> int:
        return self._cache.cleanup()

    def dispose(self) -> None:
        """Dispose every registered runner. The cache itself is kept."""
        for registration in self._registry.values():
            registration.runner.dispose()
        self._registry.clear()


__all__ = ["QueryClient"]

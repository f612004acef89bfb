"""Per-key query state machine.

A ``QueryRunner`` owns fetching for one cache key: it reads the shared
``QueryCache`` first, retries the fetch function on failure, writes results
back into the cache and keeps its ``QueryState`` in sync with whatever any
runner on the same key writes there.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import traceback
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Generic, TypeVar

from querysync.cache import QueryCache, get_default_cache
from querysync.duration import to_seconds
from querysync.errors import RunnerDisposedError
from querysync.keys import query_key
from querysync.lifecycle import FocusSignal, LifecycleSignal
from querysync.options import QueryOptions
from querysync.retry import run_with_retry
from querysync.state import (
    QueryError,
    QueryIdle,
    QueryLoading,
    QueryRefetching,
    QueryState,
    QuerySuccess,
)
from querysync.types import CacheEntry, CacheKey, QueryFn

T = TypeVar("T")

logger = logging.getLogger(__name__)

StateListener = Callable[[QueryState[T]], None]


class QueryRunner(Generic[T]):
    """State machine driving fetches for a single cache key.

    Usage:
        runner = QueryRunner("user-1", fetch_user, QueryOptions(stale_time="1m"))
        await runner.mount()
        print(runner.state)
        ...
        runner.dispose()

    Overlapping fetches on one runner are not coalesced unless
    ``single_flight`` is set; the last completion wins. Disposal never
    aborts an in-flight fetch: its result still lands in the cache, but the
    runner's state is left untouched.
    """

    def __init__(
        self,
        key: CacheKey,
        fn: QueryFn[T],
        options: QueryOptions[T] | None = None,
        *,
        cache: QueryCache | None = None,
        lifecycle: LifecycleSignal | None = None,
        focus: FocusSignal | None = None,
    ) -> None:
        self._key = key if isinstance(key, str) else query_key(key)
        self._fn = fn
        self._options: QueryOptions[T] = options if options is not None else QueryOptions()
        self._cache = cache if cache is not None else get_default_cache()
        self._lifecycle = lifecycle
        self._focus = focus if focus is not None and focus.is_supported else None

        self._state: QueryState[T] = QueryIdle()
        self._listeners: list[StateListener[T]] = []
        self._active = True
        self._mounted = False
        self._paused = False
        self._fetching = 0
        self._retry_count = 0

        self._interval_task: asyncio.Task[None] | None = None
        self._current_fetch: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def key(self) -> str:
        return self._key

    @property
    def options(self) -> QueryOptions[T]:
        return self._options

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def state(self) -> QueryState[T]:
        return self._state

    @property
    def data(self) -> T | None:
        return self._state.data

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_mounted(self) -> bool:
        return self._mounted

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_fetching(self) -> bool:
        """Best-effort in-flight marker; true while any fetch is running."""
        return self._fetching > 0

    @property
    def retry_count(self) -> int:
        """Failed attempts in the current fetch cycle."""
        return self._retry_count

    def get_cached_data(self) -> T | None:
        """Cached data for this key without counting a lookup."""
        entry = self._cache.peek(self._key)
        if entry is None or not entry.has_data or entry.should_evict:
            return None
        return entry.data

    def subscribe(self, listener: StateListener[T]) -> Callable[[], None]:
        """Call ``listener`` on every state change. Returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def mount(self) -> asyncio.Task[None] | None:
        """Attach to the cache and signals and start the initial fetch.

        Returns the initial fetch task (await it to wait for the first
        result), or ``None`` when no fetch was needed. Mounting twice is a
        no-op.
        """
        self._ensure_active()
        if self._mounted:
            return None
        self._mounted = True

        self._cache.add_listener(self._key, self._on_cache_change)
        if self._lifecycle is not None:
            self._lifecycle.on_foreground(self._on_foreground)
            self._lifecycle.on_background(self._on_background)
            if self._lifecycle.is_background and self._options.pause_refetch_in_background:
                self._paused = True
        if self._focus is not None:
            self._focus.on_focus(self._on_focus)

        entry = self._cache.peek(self._key)
        cached = entry is not None and entry.has_data and not entry.should_evict
        if cached and entry is not None and not entry.is_stale:
            self._set_state(QuerySuccess(entry.data, fetched_at=entry.fetched_at))

        self._start_interval()

        if not self._options.enabled:
            return None
        if cached and not self._options.refetch_on_mount:
            logger.debug("Skipping mount fetch for %s", self._key)
            return None
        return self._start_fetch()

    def dispose(self) -> None:
        """Detach from the cache and signals and stop timers.

        The cache entry and any in-flight fetch are left alone.
        """
        if not self._active:
            return
        self._active = False
        if self._interval_task is not None:
            self._interval_task.cancel()
            self._interval_task = None
        self._cache.remove_listener(self._key, self._on_cache_change)
        if self._lifecycle is not None:
            self._lifecycle.remove_foreground(self._on_foreground)
            self._lifecycle.remove_background(self._on_background)
        if self._focus is not None:
            self._focus.remove_focus(self._on_focus)
        self._listeners.clear()
        logger.debug("Disposed runner for %s", self._key)

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def refetch(self, *, force: bool = False) -> None:
        """Fetch now. With ``force`` the cache-first check is skipped.

        Fetch errors are absorbed into ``state``; this never raises them.
        """
        self._ensure_active()
        task = self._start_fetch(force=force)
        if task is not None:
            await asyncio.shield(task)

    def schedule_refetch(self, *, force: bool = False) -> asyncio.Task[None] | None:
        """Start a fetch in the background without waiting for it."""
        self._ensure_active()
        return self._start_fetch(force=force)

    async def refresh(self) -> None:
        """Drop the cached entry and fetch from scratch."""
        self._ensure_active()
        self._cache.remove(self._key, notify=False)
        await self.refetch(force=True)

    def set_data(self, data: T) -> None:
        """Write ``data`` to the cache and jump straight to ``Success``."""
        entry = self._cache.set_data(
            self._key,
            data,
            stale_time=self._options.stale_ms,
            cache_time=self._options.cache_ms,
        )
        self._retry_count = 0
        self._set_state(QuerySuccess(data, fetched_at=entry.fetched_at))

    def _start_fetch(self, *, force: bool = False) -> asyncio.Task[None] | None:
        current = self._current_fetch
        if self._options.single_flight and current is not None and not current.done():
            logger.debug("Joining in-flight fetch for %s", self._key)
            return current
        task = self._spawn(self._fetch(force=force))
        if task is not None:
            self._current_fetch = task
        return task

    async def _fetch(self, *, force: bool = False) -> None:
        if not self._options.enabled:
            logger.debug("Query %s is disabled, not fetching", self._key)
            return

        # Marked in flight before the cache read, whose eviction notifies us
        self._fetching += 1
        try:
            if force:
                entry = self._cache.peek(self._key)
            else:
                entry = self._cache.get(self._key)
                if entry is not None and entry.has_data and not entry.is_stale:
                    logger.debug("Fresh cache hit for %s, skipping fetch", self._key)
                    self._set_state(QuerySuccess(entry.data, fetched_at=entry.fetched_at))
                    return

            self._set_state(self._pending_state(entry))
            logger.debug("Fetching %s", self._key)
            await self._execute()
        finally:
            self._fetching -= 1

    def _pending_state(self, entry: CacheEntry[Any] | None) -> QueryState[T]:
        if self._options.keep_previous_data:
            if self._state.has_data:
                fetched_at = getattr(self._state, "fetched_at", None)
                return QueryRefetching(self._state.data, fetched_at=fetched_at)
            if entry is not None and entry.has_data and not entry.should_evict:
                return QueryRefetching(entry.data, fetched_at=entry.fetched_at)
        return QueryLoading()

    async def _execute(self) -> None:
        def on_retry(failed: int) -> None:
            self._retry_count = failed

        try:
            data = await run_with_retry(
                self._fn,
                retry=self._options.retry,
                delay_ms=self._options.retry_delay_ms,
                backoff=self._options.retry_backoff,
                label=self._key,
                on_retry=on_retry,
            )
        except Exception as exc:
            self._retry_count = 0
            self._handle_failure(exc)
            return

        self._retry_count = 0
        self._handle_success(data)

    def _handle_success(self, data: T) -> None:
        # The cache is shared, so it is written even after dispose
        entry = self._cache.set_data(
            self._key,
            data,
            stale_time=self._options.stale_ms,
            cache_time=self._options.cache_ms,
        )
        if not self._active:
            logger.debug("Fetch for %s completed after dispose", self._key)
            return
        self._set_state(QuerySuccess(data, fetched_at=entry.fetched_at))
        self._notify_success(data)

    def _notify_success(self, data: T) -> None:
        self._invoke_hook("on_success", self._options.on_success, data)

    def _handle_failure(self, exc: Exception) -> None:
        stack_trace = "".join(traceback.format_exception(exc))
        existing = self._cache.peek(self._key)
        if existing is None or not existing.has_data:
            self._cache.set_error(
                self._key,
                exc,
                stack_trace=stack_trace,
                stale_time=self._options.stale_ms,
                cache_time=self._options.cache_ms,
            )
        if not self._active:
            logger.debug("Fetch for %s failed after dispose: %r", self._key, exc)
            return
        logger.warning(
            "Query %s failed after %d attempt(s): %r",
            self._key,
            self._options.retry + 1,
            exc,
        )
        self._set_state(QueryError(exc, stack_trace=stack_trace))
        self._invoke_hook("on_error", self._options.on_error, exc)

    # -------------------------------------------------------------------------
    # Reactions
    # -------------------------------------------------------------------------

    def _on_cache_change(self, entry: CacheEntry[Any] | None) -> None:
        if not self._active:
            return
        if entry is not None:
            if entry.has_data:
                self._set_state(QuerySuccess(entry.data, fetched_at=entry.fetched_at))
            return

        if self._options.on_cache_evicted is not None:
            self._set_state(QueryIdle())
            self._invoke_hook("on_cache_evicted", self._options.on_cache_evicted, self._key)
        elif self._mounted and self._options.enabled:
            if self._fetching:
                return
            logger.debug("Entry for %s removed, refetching", self._key)
            self._set_state(self._pending_state(None))
            if self._start_fetch() is None:
                self._set_state(QueryIdle())
        else:
            self._set_state(QueryIdle())

    def _on_background(self) -> None:
        if self._options.pause_refetch_in_background:
            logger.debug("Pausing %s in background", self._key)
            self._paused = True

    def _on_foreground(self) -> None:
        self._paused = False
        if self._options.refetch_on_app_focus and self._needs_refetch():
            logger.debug("App resumed with stale %s, refetching", self._key)
            self._start_fetch()

    def _on_focus(self) -> None:
        if self._paused:
            return
        if self._options.refetch_on_window_focus and self._needs_refetch():
            logger.debug("Window focused with stale %s, refetching", self._key)
            self._start_fetch()

    def _needs_refetch(self) -> bool:
        if not self._active or not self._options.enabled:
            return False
        entry = self._cache.peek(self._key)
        return entry is None or not entry.has_data or entry.is_stale

    def _start_interval(self) -> None:
        interval = self._options.refetch_interval_ms
        if interval is None:
            return
        self._interval_task = self._spawn(self._interval_loop(interval))

    async def _interval_loop(self, interval_ms: int) -> None:
        while self._active:
            await asyncio.sleep(to_seconds(interval_ms))
            if not self._active:
                break
            if not self._options.enabled or self._paused or self._fetching:
                continue
            self._start_fetch()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _ensure_active(self) -> None:
        if not self._active:
            raise RunnerDisposedError(self._key)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, %s not scheduled", self._key)
            return None
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _set_state(self, state: QueryState[T]) -> None:
        if not self._active or state == self._state:
            return
        logger.debug(
            "%s: %s -> %s",
            self._key,
            type(self._state).__name__,
            type(state).__name__,
        )
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener error for %s", self._key)

    def _invoke_hook(self, name: str, hook: Callable[..., Any] | None, *args: Any) -> None:
        """Call a hook; a coroutine result runs as a tracked background task."""
        if hook is None:
            return
        try:
            result = hook(*args)
        except Exception:
            logger.exception("Error in %s hook for %s", name, self._key)
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_hook(name, result))

    async def _await_hook(self, name: str, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception:
            logger.exception("Error in %s hook for %s", name, self._key)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self._key!r}, state={self._state!r})"


__all__ = ["QueryRunner", "StateListener"]

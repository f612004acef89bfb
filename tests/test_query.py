"""Tests for QueryRunner."""

import asyncio
import logging
from typing import Any

import pytest

from querysync import (
    AppLifecycle,
    QueryCache,
    QueryError,
    QueryIdle,
    QueryLoading,
    QueryOptions,
    QueryRefetching,
    QueryRunner,
    QueryState,
    QuerySuccess,
    RunnerDisposedError,
    WindowFocus,
)


def fast(**kwargs: Any) -> QueryOptions[Any]:
    """Options with millisecond retry delays for quick tests."""
    kwargs.setdefault("retry_delay", 1)
    return QueryOptions(**kwargs)


class Counter:
    """Fetch function that counts calls and can fail a number of times."""

    def __init__(self, failures: int = 0, delay: float = 0) -> None:
        self.calls = 0
        self.failures = failures
        self.delay = delay

    async def __call__(self) -> dict[str, int]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise ConnectionError(f"attempt {self.calls} failed")
        return {"value": self.calls}


class TestMount:
    """Tests for the initial fetch."""

    async def test_mount_fetches_into_success(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(), cache=cache)
        task = runner.mount()
        assert task is not None
        await task

        assert runner.state.is_success
        assert runner.data == {"value": 1}
        assert cache.peek("user-1").data == {"value": 1}
        assert fetch.calls == 1
        runner.dispose()

    async def test_mount_passes_through_loading(self, cache: QueryCache) -> None:
        states: list[QueryState[Any]] = []
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache)
        runner.subscribe(states.append)
        await runner.mount()
        assert isinstance(states[0], QueryLoading)
        assert isinstance(states[-1], QuerySuccess)
        runner.dispose()

    async def test_fresh_cache_skips_fetch(self, cache: QueryCache) -> None:
        cache.set_data("user-1", {"value": 0}, stale_time="1m")
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(), cache=cache)

        task = runner.mount()
        assert runner.state.is_success
        if task is not None:
            await task

        assert fetch.calls == 0
        assert runner.data == {"value": 0}
        runner.dispose()

    async def test_refetch_on_mount_disabled(self, cache: QueryCache) -> None:
        cache.set_data("user-1", {"value": 0}, stale_time=0)
        await asyncio.sleep(0.005)
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(refetch_on_mount=False), cache=cache)
        assert runner.mount() is None
        assert fetch.calls == 0
        runner.dispose()

    async def test_disabled_query_never_fetches(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(enabled=False), cache=cache)
        assert runner.mount() is None
        await runner.refetch()
        assert fetch.calls == 0
        assert runner.state.is_idle
        runner.dispose()

    async def test_tuple_key_is_normalized(self, cache: QueryCache) -> None:
        runner = QueryRunner(("user", 1), Counter(), fast(), cache=cache)
        assert runner.key == "user-1"
        runner.dispose()

    async def test_mount_twice_is_noop(self, cache: QueryCache) -> None:
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache)
        await runner.mount()
        assert runner.mount() is None
        assert cache.listener_count("user-1") == 1
        runner.dispose()


class TestRetry:
    """Tests for retry behavior."""

    async def test_two_failures_then_success(self, cache: QueryCache) -> None:
        fetch = Counter(failures=2)
        successes: list[Any] = []
        runner = QueryRunner(
            "user-1", fetch, fast(retry=2, on_success=successes.append), cache=cache
        )
        await runner.refetch()

        assert fetch.calls == 3
        assert runner.state.is_success
        assert runner.data == {"value": 3}
        assert runner.retry_count == 0
        assert successes == [{"value": 3}]

    async def test_exhausted_retries_end_in_error(self, cache: QueryCache) -> None:
        fetch = Counter(failures=3)
        errors: list[BaseException] = []
        runner = QueryRunner("user-1", fetch, fast(retry=2, on_error=errors.append), cache=cache)

        await runner.refetch()

        assert fetch.calls == 3
        assert isinstance(runner.state, QueryError)
        assert isinstance(runner.state.error, ConnectionError)
        assert "attempt 3 failed" in str(runner.state.error)
        assert "ConnectionError" in runner.state.stack_trace
        assert len(errors) == 1
        assert runner.retry_count == 0

    async def test_retry_zero_disables_retries(self, cache: QueryCache) -> None:
        fetch = Counter(failures=1)
        runner = QueryRunner("user-1", fetch, fast(retry=0), cache=cache)
        await runner.refetch()
        assert fetch.calls == 1
        assert runner.state.has_error

    async def test_retry_waits_between_attempts(self, cache: QueryCache) -> None:
        fetch = Counter(failures=1)
        runner = QueryRunner("user-1", fetch, fast(retry=1, retry_delay=50), cache=cache)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await runner.refetch()
        assert loop.time() - started >= 0.045
        assert fetch.calls == 2

    async def test_retry_count_visible_during_retries(self, cache: QueryCache) -> None:
        seen: list[int] = []
        runner: QueryRunner[int]

        async def flaky() -> int:
            seen.append(runner.retry_count)
            if len(seen) < 3:
                raise ConnectionError("flaky")
            return 1

        runner = QueryRunner("k", flaky, fast(retry=3), cache=cache)
        await runner.refetch()
        assert seen == [0, 1, 2]

    async def test_failure_is_logged_as_warning(
        self, cache: QueryCache, caplog: pytest.LogCaptureFixture
    ) -> None:
        runner = QueryRunner("user-1", Counter(failures=1), fast(retry=0), cache=cache)
        with caplog.at_level(logging.WARNING, logger="querysync.query"):
            await runner.refetch()
        assert "user-1" in caplog.text

    async def test_error_entry_written_when_no_data(self, cache: QueryCache) -> None:
        runner = QueryRunner("user-1", Counter(failures=1), fast(retry=0), cache=cache)
        await runner.refetch()
        stored = cache.peek("user-1")
        assert stored.has_error
        assert not stored.has_data

    async def test_error_keeps_existing_cached_data(self, cache: QueryCache) -> None:
        cache.set_data("user-1", {"value": 0}, stale_time=0)
        runner = QueryRunner("user-1", Counter(failures=1), fast(retry=0), cache=cache)
        await runner.refetch(force=True)
        assert runner.state.has_error
        assert cache.peek("user-1").data == {"value": 0}

    async def test_cancellation_is_not_retried(self, cache: QueryCache) -> None:
        calls = 0

        async def cancelled() -> int:
            nonlocal calls
            calls += 1
            raise asyncio.CancelledError

        runner = QueryRunner("k", cancelled, fast(retry=3), cache=cache)
        with pytest.raises(asyncio.CancelledError):
            await runner.refetch()
        assert calls == 1


class TestRefetch:
    """Tests for manual refetch and keep_previous_data."""

    async def test_keep_previous_data_goes_through_refetching(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(keep_previous_data=True), cache=cache)
        await runner.refetch()
        assert runner.data == {"value": 1}

        states: list[QueryState[Any]] = []
        runner.subscribe(states.append)
        await runner.refetch(force=True)

        assert isinstance(states[0], QueryRefetching)
        assert states[0].previous_data == {"value": 1}
        assert states[-1].data == {"value": 2}
        assert states[-1].is_success

    async def test_without_keep_previous_data_goes_through_loading(
        self, cache: QueryCache
    ) -> None:
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache)
        await runner.refetch()
        states: list[QueryState[Any]] = []
        runner.subscribe(states.append)
        await runner.refetch(force=True)
        assert isinstance(states[0], QueryLoading)
        assert states[-1].is_success

    async def test_keep_previous_data_uses_cached_value(self, cache: QueryCache) -> None:
        """A previous value in the cache alone is enough for Refetching."""
        cache.set_data("user-1", {"value": 0}, stale_time=0)
        await asyncio.sleep(0.005)
        states: list[QueryState[Any]] = []
        runner = QueryRunner("user-1", Counter(), fast(keep_previous_data=True), cache=cache)
        runner.subscribe(states.append)
        await runner.refetch()
        assert isinstance(states[0], QueryRefetching)
        assert states[0].previous_data == {"value": 0}
        assert runner.data == {"value": 1}

    async def test_keep_previous_data_refetch_failure(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "user-1", fetch, fast(keep_previous_data=True, retry=0), cache=cache
        )
        await runner.refetch()
        fetch.failures = 99
        await runner.refetch(force=True)
        assert runner.state.has_error

    async def test_cache_first_across_runners(self, cache: QueryCache) -> None:
        """A second runner on the same key reuses the first runner's result."""
        first_fetch = Counter()
        second_fetch = Counter()
        first = QueryRunner("user-1", first_fetch, fast(), cache=cache)
        second = QueryRunner("user-1", second_fetch, fast(), cache=cache)

        await first.refetch()
        await second.refetch()

        assert first_fetch.calls == 1
        assert second_fetch.calls == 0
        assert second.data == {"value": 1}

    async def test_stale_cache_triggers_fetch(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(stale_time=5), cache=cache)
        await runner.refetch()
        await asyncio.sleep(0.02)
        await runner.refetch()
        assert fetch.calls == 2

    async def test_refresh_drops_entry_and_fetches(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(), cache=cache)
        await runner.refetch()
        await runner.refresh()
        assert fetch.calls == 2
        assert runner.data == {"value": 2}

    async def test_set_data(self, cache: QueryCache) -> None:
        fetch = Counter(failures=5)
        runner = QueryRunner("user-1", fetch, fast(retry=0), cache=cache)
        await runner.refetch()
        assert runner.state.has_error

        runner.set_data({"value": 42})

        assert runner.state.is_success
        assert runner.data == {"value": 42}
        assert runner.get_cached_data() == {"value": 42}
        assert runner.retry_count == 0

    async def test_overlapping_refetches_last_write_wins(self, cache: QueryCache) -> None:
        delays = iter([0.05, 0.01])

        async def fetch() -> float:
            delay = next(delays)
            await asyncio.sleep(delay)
            return delay

        runner = QueryRunner("k", fetch, fast(), cache=cache)
        await asyncio.gather(runner.refetch(force=True), runner.refetch(force=True))
        assert runner.data == 0.05

    async def test_is_fetching_marker(self, cache: QueryCache) -> None:
        runner = QueryRunner("k", Counter(delay=0.02), fast(), cache=cache)
        task = asyncio.ensure_future(runner.refetch())
        await asyncio.sleep(0.005)
        assert runner.is_fetching
        await task
        assert not runner.is_fetching

    async def test_single_flight_coalesces(self, cache: QueryCache) -> None:
        fetch = Counter(delay=0.02)
        runner = QueryRunner("k", fetch, fast(single_flight=True), cache=cache)
        await asyncio.gather(*(runner.refetch(force=True) for _ in range(5)))
        assert fetch.calls == 1

    async def test_hook_errors_are_logged(
        self, cache: QueryCache, caplog: pytest.LogCaptureFixture
    ) -> None:
        def broken(_: Any) -> None:
            raise RuntimeError("hook bug")

        runner = QueryRunner("k", Counter(), fast(on_success=broken), cache=cache)
        with caplog.at_level(logging.ERROR, logger="querysync.query"):
            await runner.refetch()
        assert runner.state.is_success
        assert "on_success" in caplog.text

    async def test_async_hooks_are_awaited(self, cache: QueryCache) -> None:
        seen: list[Any] = []

        async def record(value: Any) -> None:
            await asyncio.sleep(0)
            seen.append(value)

        runner = QueryRunner(
            "k", Counter(failures=1), fast(retry=0, on_success=record, on_error=record), cache=cache
        )
        await runner.refetch()
        await runner.refetch(force=True)
        await asyncio.sleep(0.01)

        assert isinstance(seen[0], ConnectionError)
        assert seen[1] == {"value": 2}

    async def test_async_hook_errors_are_logged(
        self, cache: QueryCache, caplog: pytest.LogCaptureFixture
    ) -> None:
        async def broken(_: Any) -> None:
            raise RuntimeError("async hook bug")

        runner = QueryRunner("k", Counter(), fast(on_success=broken), cache=cache)
        with caplog.at_level(logging.ERROR, logger="querysync.query"):
            await runner.refetch()
            await asyncio.sleep(0.01)
        assert runner.state.is_success
        assert "async hook bug" in caplog.text


class TestCacheReactions:
    """Tests for reacting to writes and removals by others."""

    async def test_external_write_updates_state(self, cache: QueryCache) -> None:
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache)
        await runner.mount()
        cache.set_data("user-1", {"value": 99})
        assert runner.data == {"value": 99}
        runner.dispose()

    async def test_eviction_callback(self, cache: QueryCache) -> None:
        evicted: list[str] = []
        fetch = Counter()
        runner = QueryRunner(
            "user-1", fetch, fast(on_cache_evicted=evicted.append), cache=cache
        )
        await runner.mount()

        cache.remove("user-1")

        assert evicted == ["user-1"]
        assert isinstance(runner.state, QueryIdle)
        await asyncio.sleep(0.01)
        assert fetch.calls == 1
        runner.dispose()

    async def test_eviction_triggers_silent_refetch(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(), cache=cache)
        await runner.mount()

        cache.remove("user-1")
        assert runner.state.is_loading
        await asyncio.sleep(0.02)

        assert fetch.calls == 2
        assert runner.data == {"value": 2}
        runner.dispose()

    async def test_eviction_never_leaves_stale_success(self, cache: QueryCache) -> None:
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache)
        await runner.mount()
        cache.remove("user-1")
        assert not runner.state.is_success
        await asyncio.sleep(0.02)
        runner.dispose()

    async def test_disabled_runner_goes_idle_on_eviction(self, cache: QueryCache) -> None:
        cache.set_data("user-1", {"value": 0})
        runner = QueryRunner("user-1", Counter(), fast(enabled=False), cache=cache)
        runner.mount()
        assert runner.state.is_success

        cache.remove("user-1")

        assert runner.state.is_idle
        runner.dispose()

    async def test_clear_refetches_active_runners(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner("user-1", fetch, fast(), cache=cache)
        await runner.mount()
        cache.clear()
        await asyncio.sleep(0.02)
        assert fetch.calls == 2
        runner.dispose()


class TestDisposal:
    """Tests for dispose()."""

    async def test_dispose_unsubscribes(self, cache: QueryCache, lifecycle: AppLifecycle) -> None:
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache, lifecycle=lifecycle)
        await runner.mount()
        runner.dispose()

        cache.set_data("user-1", {"value": 50})

        assert cache.listener_count("user-1") == 0
        assert runner.data == {"value": 1}
        assert not runner.is_active

    async def test_operations_after_dispose_raise(self, cache: QueryCache) -> None:
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache)
        runner.dispose()
        with pytest.raises(RunnerDisposedError):
            runner.mount()
        with pytest.raises(RunnerDisposedError):
            await runner.refetch()

    async def test_dispose_during_fetch(
        self, cache: QueryCache, caplog: pytest.LogCaptureFixture
    ) -> None:
        """The fetch completes into the cache without touching runner state."""
        fetch = Counter(delay=0.02)
        runner = QueryRunner("user-1", fetch, fast(), cache=cache)
        task = runner.mount()
        await asyncio.sleep(0.005)
        state_before = runner.state

        with caplog.at_level(logging.INFO, logger="querysync"):
            runner.dispose()
            await task

        assert runner.state == state_before
        assert cache.peek("user-1").data == {"value": 1}
        assert caplog.records == []

    async def test_dispose_during_failing_fetch_is_quiet(
        self, cache: QueryCache, caplog: pytest.LogCaptureFixture
    ) -> None:
        errors: list[BaseException] = []
        fetch = Counter(failures=1, delay=0.02)
        runner = QueryRunner("user-1", fetch, fast(retry=0, on_error=errors.append), cache=cache)
        task = runner.mount()
        await asyncio.sleep(0.005)

        with caplog.at_level(logging.INFO, logger="querysync"):
            runner.dispose()
            await task

        assert errors == []
        assert caplog.records == []

    async def test_dispose_keeps_cache_entry(self, cache: QueryCache) -> None:
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache)
        await runner.mount()
        runner.dispose()
        assert cache.peek("user-1") is not None

    async def test_dispose_is_idempotent(self, cache: QueryCache) -> None:
        runner = QueryRunner("user-1", Counter(), fast(), cache=cache)
        runner.dispose()
        runner.dispose()


class TestScheduling:
    """Tests for interval and lifecycle-triggered refetches."""

    async def test_interval_refetches(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k", fetch, fast(stale_time=0, refetch_interval=20), cache=cache
        )
        await runner.mount()
        await asyncio.sleep(0.11)
        runner.dispose()
        assert fetch.calls >= 3

    async def test_interval_stops_on_dispose(self, cache: QueryCache) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k", fetch, fast(stale_time=0, refetch_interval=10), cache=cache
        )
        await runner.mount()
        runner.dispose()
        calls = fetch.calls
        await asyncio.sleep(0.05)
        assert fetch.calls == calls

    async def test_interval_paused_in_background(
        self, cache: QueryCache, lifecycle: AppLifecycle
    ) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k",
            fetch,
            fast(stale_time=0, refetch_interval=10, pause_refetch_in_background=True),
            cache=cache,
            lifecycle=lifecycle,
        )
        await runner.mount()
        lifecycle.pause()
        calls = fetch.calls
        await asyncio.sleep(0.06)

        assert runner.is_paused
        assert fetch.calls == calls
        runner.dispose()

    async def test_interval_continues_in_background_when_not_pausing(
        self, cache: QueryCache, lifecycle: AppLifecycle
    ) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k",
            fetch,
            fast(stale_time=0, refetch_interval=10, pause_refetch_in_background=False),
            cache=cache,
            lifecycle=lifecycle,
        )
        await runner.mount()
        lifecycle.pause()
        calls = fetch.calls
        await asyncio.sleep(0.08)

        assert not runner.is_paused
        assert fetch.calls > calls
        runner.dispose()

    async def test_resume_refetches_stale_when_app_focus_enabled(
        self, cache: QueryCache, lifecycle: AppLifecycle
    ) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k",
            fetch,
            fast(stale_time=5, refetch_on_app_focus=True),
            cache=cache,
            lifecycle=lifecycle,
        )
        await runner.mount()
        lifecycle.pause()
        await asyncio.sleep(0.02)

        lifecycle.resume()
        await asyncio.sleep(0.01)

        assert not runner.is_paused
        assert fetch.calls == 2
        runner.dispose()

    async def test_resume_skips_fresh_data(
        self, cache: QueryCache, lifecycle: AppLifecycle
    ) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k",
            fetch,
            fast(stale_time="1m", refetch_on_app_focus=True),
            cache=cache,
            lifecycle=lifecycle,
        )
        await runner.mount()
        lifecycle.pause()
        lifecycle.resume()
        await asyncio.sleep(0.01)
        assert fetch.calls == 1
        runner.dispose()

    async def test_resume_without_app_focus_option(
        self, cache: QueryCache, lifecycle: AppLifecycle
    ) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k", fetch, fast(stale_time=5), cache=cache, lifecycle=lifecycle
        )
        await runner.mount()
        lifecycle.pause()
        await asyncio.sleep(0.02)
        lifecycle.resume()
        await asyncio.sleep(0.01)
        assert fetch.calls == 1
        runner.dispose()

    async def test_window_focus_refetches_stale(
        self, cache: QueryCache, focus: WindowFocus
    ) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k",
            fetch,
            fast(stale_time=5, refetch_on_window_focus=True),
            cache=cache,
            focus=focus,
        )
        await runner.mount()
        focus.set_focus(False)
        await asyncio.sleep(0.02)
        focus.set_focus(True)
        await asyncio.sleep(0.01)
        assert fetch.calls == 2
        runner.dispose()

    async def test_unsupported_focus_is_noop(self, cache: QueryCache) -> None:
        focus = WindowFocus(supported=False)
        fetch = Counter()
        runner = QueryRunner(
            "k",
            fetch,
            fast(stale_time=5, refetch_on_window_focus=True),
            cache=cache,
            focus=focus,
        )
        await runner.mount()
        focus.set_focus(False)
        focus.set_focus(True)
        await asyncio.sleep(0.02)
        assert fetch.calls == 1
        runner.dispose()

    async def test_interval_and_focus_together(
        self, cache: QueryCache, lifecycle: AppLifecycle, focus: WindowFocus
    ) -> None:
        fetch = Counter()
        runner = QueryRunner(
            "k",
            fetch,
            fast(stale_time=0, refetch_interval=20, refetch_on_window_focus=True),
            cache=cache,
            lifecycle=lifecycle,
            focus=focus,
        )
        await runner.mount()
        await asyncio.sleep(0.05)
        after_interval = fetch.calls
        focus.set_focus(False)
        focus.set_focus(True)
        await asyncio.sleep(0.005)

        assert after_interval >= 2
        assert fetch.calls > after_interval
        runner.dispose()

    async def test_mount_in_background_starts_paused(self, cache: QueryCache) -> None:
        lifecycle = AppLifecycle()
        lifecycle.pause()
        runner = QueryRunner("k", Counter(), fast(), cache=cache, lifecycle=lifecycle)
        await runner.mount()
        assert runner.is_paused
        runner.dispose()

"""Cursor-paged queries.

The whole page list lives under one cache key as an ``InfiniteData`` value,
so staleness and eviction apply to all pages at once. A full (re)fetch walks
the cursor chain again from the initial page parameter.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from querysync.cache import QueryCache
from querysync.lifecycle import FocusSignal, LifecycleSignal
from querysync.options import InfiniteQueryOptions
from querysync.query import QueryRunner
from querysync.retry import run_with_retry
from querysync.state import QuerySuccess
from querysync.types import CacheKey

T = TypeVar("T")
P = TypeVar("P")

logger = logging.getLogger(__name__)

PageFn = Callable[[P], Awaitable[T]]


@dataclass(frozen=True, slots=True)
class InfiniteData(Generic[T, P]):
    """Loaded pages, the cursor used for each and the paging flags."""

    pages: tuple[T, ...]
    page_params: tuple[P, ...]
    has_next_page: bool = False
    has_previous_page: bool = False

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def flatten(self, items: Callable[[T], Sequence[Any]]) -> list[Any]:
        """Concatenate ``items(page)`` across all pages, in order."""
        return [item for page in self.pages for item in items(page)]


class InfiniteQueryRunner(QueryRunner[InfiniteData[T, P]], Generic[T, P]):
    """Query runner over an ordered, cursor-chained list of pages.

    ``fetch_next_page()`` and ``fetch_previous_page()`` resolve immediately
    without side effects when there is nothing to load or any fetch for
    this runner is already in flight.
    """

    def __init__(
        self,
        key: CacheKey,
        fn: PageFn[P, T],
        initial_page_param: P,
        options: InfiniteQueryOptions[T, P],
        *,
        cache: QueryCache | None = None,
        lifecycle: LifecycleSignal | None = None,
        focus: FocusSignal | None = None,
    ) -> None:
        self._page_fn = fn
        self._initial_page_param = initial_page_param
        self._page_options = options
        self._fetching_next = False
        self._fetching_previous = False
        self._page_error: BaseException | None = None
        super().__init__(
            key,
            self._fetch_pages,
            options,  # type: ignore[arg-type]
            cache=cache,
            lifecycle=lifecycle,
            focus=focus,
        )

    @property
    def initial_page_param(self) -> P:
        return self._initial_page_param

    @property
    def has_next_page(self) -> bool:
        data = self.data
        return data is not None and data.has_next_page

    @property
    def has_previous_page(self) -> bool:
        data = self.data
        return data is not None and data.has_previous_page

    @property
    def is_fetching_next_page(self) -> bool:
        return self._fetching_next

    @property
    def is_fetching_previous_page(self) -> bool:
        return self._fetching_previous

    @property
    def page_error(self) -> BaseException | None:
        """Error from the last failed page fetch; the loaded pages are kept."""
        return self._page_error

    async def fetch_next_page(self) -> None:
        """Load the page after the last one and append it."""
        self._ensure_active()
        data = self.data
        if data is None or not data.has_next_page or self._busy():
            logger.debug("fetch_next_page for %s is a no-op", self.key)
            return
        param = self._page_options.get_next_page_param(data.pages[-1], list(data.pages))  # type: ignore[misc]
        if param is None:
            return

        self._fetching_next = True
        self._page_error = None
        try:
            page = await self._fetch_page(param)
        except Exception as exc:
            self._handle_page_failure(exc, "next")
            return
        finally:
            self._fetching_next = False

        current = self.data or data
        self._store_pages(
            (*current.pages, page),
            (*current.page_params, param),
        )
        if self.is_active:
            self._invoke_hook("on_success", self.options.on_success, page)

    async def fetch_previous_page(self) -> None:
        """Load the page before the first one and prepend it."""
        self._ensure_active()
        get_previous = self._page_options.get_previous_page_param
        data = self.data
        if get_previous is None or data is None or not data.has_previous_page or self._busy():
            logger.debug("fetch_previous_page for %s is a no-op", self.key)
            return
        param = get_previous(data.pages[0], list(data.pages))
        if param is None:
            return

        self._fetching_previous = True
        self._page_error = None
        try:
            page = await self._fetch_page(param)
        except Exception as exc:
            self._handle_page_failure(exc, "previous")
            return
        finally:
            self._fetching_previous = False

        current = self.data or data
        self._store_pages(
            (page, *current.pages),
            (param, *current.page_params),
        )
        if self.is_active:
            self._invoke_hook("on_success", self.options.on_success, page)

    async def _fetch_pages(self) -> InfiniteData[T, P]:
        """Walk the chain from the initial cursor for as many pages as are loaded."""
        loaded = self.data or self.get_cached_data()
        target = max(1, loaded.page_count if loaded is not None else 1)
        get_next = self._page_options.get_next_page_param

        pages: list[T] = []
        params: list[P] = []
        param: P | None = self._initial_page_param
        while param is not None and len(pages) < target:
            pages.append(await self._page_fn(param))
            params.append(param)
            if len(pages) < target:
                param = get_next(pages[-1], list(pages))  # type: ignore[misc]
        return self._build(tuple(pages), tuple(params))

    async def _fetch_page(self, param: P) -> T:
        def on_retry(failed: int) -> None:
            self._retry_count = failed

        try:
            return await run_with_retry(
                lambda: self._page_fn(param),
                retry=self.options.retry,
                delay_ms=self.options.retry_delay_ms,
                backoff=self.options.retry_backoff,
                label=f"{self.key} page {param!r}",
                on_retry=on_retry,
            )
        finally:
            self._retry_count = 0

    def _notify_success(self, data: InfiniteData[T, P]) -> None:
        # Whole-chain fetches report the last page they loaded
        if data.pages:
            self._invoke_hook("on_success", self.options.on_success, data.pages[-1])

    def _build(self, pages: tuple[T, ...], params: tuple[P, ...]) -> InfiniteData[T, P]:
        get_next = self._page_options.get_next_page_param
        get_previous = self._page_options.get_previous_page_param
        all_pages = list(pages)
        has_next = bool(pages) and get_next(pages[-1], all_pages) is not None  # type: ignore[misc]
        has_previous = (
            bool(pages)
            and get_previous is not None
            and get_previous(pages[0], all_pages) is not None
        )
        return InfiniteData(
            pages=pages,
            page_params=params,
            has_next_page=has_next,
            has_previous_page=has_previous,
        )

    def _store_pages(self, pages: tuple[T, ...], params: tuple[P, ...]) -> None:
        data = self._build(pages, params)
        entry = self.cache.set_data(
            self.key,
            data,
            stale_time=self.options.stale_ms,
            cache_time=self.options.cache_ms,
        )
        self._set_state(QuerySuccess(data, fetched_at=entry.fetched_at))

    def _handle_page_failure(self, exc: Exception, direction: str) -> None:
        if not self.is_active:
            logger.debug("%s page fetch for %s failed after dispose", direction, self.key)
            return
        self._page_error = exc
        logger.warning("Fetching %s page for %s failed: %r", direction, self.key, exc)
        self._invoke_hook("on_error", self.options.on_error, exc)

    def _busy(self) -> bool:
        return self._fetching_next or self._fetching_previous or self.is_fetching


__all__ = ["InfiniteData", "InfiniteQueryRunner", "PageFn"]

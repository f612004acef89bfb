"""Configuration for queries, infinite queries and mutations."""

from __future__ import annotations

import dataclasses
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from querysync.duration import parse_duration
from querysync.types import Duration

T = TypeVar("T")
P = TypeVar("P")
V = TypeVar("V")


@dataclass(frozen=True, slots=True)
class QueryOptions(Generic[T]):
    """Configuration for a query runner.

    Durations are milliseconds or strings such as ``"30s"`` / ``"5m"``.
    ``cache_time`` is expected to be >= ``stale_time`` but this is not
    enforced; a shorter cache time evicts entries before they go stale.
    Hooks may be plain functions or coroutine functions.
    """

    stale_time: Duration = "5m"
    cache_time: Duration = "30m"
    refetch_on_mount: bool = True
    refetch_on_window_focus: bool = False
    refetch_on_app_focus: bool = False
    pause_refetch_in_background: bool = True
    refetch_interval: Duration | None = None
    retry: int = 3
    retry_delay: Duration = "1s"
    retry_backoff: bool = False
    enabled: bool = True
    keep_previous_data: bool = False
    single_flight: bool = False
    on_success: Callable[[T], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None
    on_cache_evicted: Callable[[str], Any] | None = None

    def __post_init__(self) -> None:
        if self.retry < 0:
            raise ValueError("retry must be >= 0")
        # Fail fast on malformed durations
        parse_duration(self.stale_time)
        parse_duration(self.cache_time)
        parse_duration(self.retry_delay)
        if self.refetch_interval is not None and parse_duration(self.refetch_interval) <= 0:
            raise ValueError("refetch_interval must be positive")

    @property
    def stale_ms(self) -> int:
        return parse_duration(self.stale_time)

    @property
    def cache_ms(self) -> int:
        return parse_duration(self.cache_time)

    @property
    def retry_delay_ms(self) -> int:
        return parse_duration(self.retry_delay)

    @property
    def refetch_interval_ms(self) -> int | None:
        if self.refetch_interval is None:
            return None
        return parse_duration(self.refetch_interval)

    def copy_with(self, **changes: Any) -> QueryOptions[T]:
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True, slots=True)
class InfiniteQueryOptions(QueryOptions[T], Generic[T, P]):
    """Configuration for a cursor-paged query.

    ``get_next_page_param(last_page, all_pages)`` returns the cursor for the
    page after ``last_page`` or ``None`` when there is none.
    ``get_previous_page_param(first_page, all_pages)`` mirrors it backwards.
    """

    get_next_page_param: Callable[[T, list[T]], P | None] | None = None
    get_previous_page_param: Callable[[T, list[T]], P | None] | None = None

    def __post_init__(self) -> None:
        super(InfiniteQueryOptions, self).__post_init__()
        if self.get_next_page_param is None:
            raise ValueError("get_next_page_param is required")


@dataclass(frozen=True, slots=True)
class MutationOptions(Generic[T, V]):
    """Configuration for a mutation runner.

    Hooks may be plain functions or coroutine functions. The value returned
    by ``on_mutate`` is passed unchanged to ``on_error`` and ``on_settled``.
    ``invalidates`` lists key patterns marked stale after a success.
    """

    on_mutate: Callable[[V], Any | Awaitable[Any]] | None = None
    on_success: Callable[[T, V], Any] | None = None
    on_error: Callable[[BaseException, V, Any], Any] | None = None
    on_settled: Callable[[T | None, BaseException | None, V, Any], Any] | None = None
    invalidates: Sequence[str] = ()
    retry: int = 0
    retry_delay: Duration = "1s"

    def __post_init__(self) -> None:
        if self.retry < 0:
            raise ValueError("retry must be >= 0")
        parse_duration(self.retry_delay)

    @property
    def retry_delay_ms(self) -> int:
        return parse_duration(self.retry_delay)

    def copy_with(self, **changes: Any) -> MutationOptions[T, V]:
        return dataclasses.replace(self, **changes)


__all__ = ["InfiniteQueryOptions", "MutationOptions", "QueryOptions"]

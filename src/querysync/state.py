"""Closed state variants for queries and mutations.

Exactly one variant is active per runner. ``when`` dispatches over every
variant and raises ``TypeError`` for anything outside the closed set.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class QueryState(Generic[T]):
    """Base of the query state variants. Not instantiated directly."""

    __slots__ = ()

    @property
    def is_idle(self) -> bool:
        return isinstance(self, QueryIdle)

    @property
    def is_loading(self) -> bool:
        return isinstance(self, QueryLoading)

    @property
    def is_success(self) -> bool:
        return isinstance(self, QuerySuccess)

    @property
    def has_error(self) -> bool:
        return isinstance(self, QueryError)

    @property
    def is_refetching(self) -> bool:
        return isinstance(self, QueryRefetching)

    @property
    def has_data(self) -> bool:
        """True when a value is available for display."""
        return isinstance(self, (QuerySuccess, QueryRefetching))

    @property
    def data(self) -> T | None:
        if isinstance(self, QuerySuccess):
            return self.value
        if isinstance(self, QueryRefetching):
            return self.previous_data
        return None

    @property
    def error(self) -> BaseException | None:
        if isinstance(self, QueryError):
            return self.exception
        return None


@dataclass(frozen=True, slots=True)
class QueryIdle(QueryState[T]):
    """Nothing fetched yet, or the cached value went away."""


@dataclass(frozen=True, slots=True)
class QueryLoading(QueryState[T]):
    """First fetch in flight with nothing to show."""


@dataclass(frozen=True, slots=True)
class QuerySuccess(QueryState[T]):
    value: T
    fetched_at: int | None = None


@dataclass(frozen=True, slots=True)
class QueryError(QueryState[T]):
    exception: BaseException
    stack_trace: str | None = None


@dataclass(frozen=True, slots=True)
class QueryRefetching(QueryState[T]):
    """A fetch is in flight while the previous value stays visible."""

    previous_data: T
    fetched_at: int | None = None


class MutationState(Generic[T]):
    """Base of the mutation state variants. Not instantiated directly."""

    __slots__ = ()

    @property
    def is_idle(self) -> bool:
        return isinstance(self, MutationIdle)

    @property
    def is_loading(self) -> bool:
        return isinstance(self, MutationLoading)

    @property
    def is_success(self) -> bool:
        return isinstance(self, MutationSuccess)

    @property
    def has_error(self) -> bool:
        return isinstance(self, MutationError)

    @property
    def data(self) -> T | None:
        if isinstance(self, MutationSuccess):
            return self.value
        return None

    @property
    def error(self) -> BaseException | None:
        if isinstance(self, MutationError):
            return self.exception
        return None


@dataclass(frozen=True, slots=True)
class MutationIdle(MutationState[T]):
    pass


@dataclass(frozen=True, slots=True)
class MutationLoading(MutationState[T]):
    pass


@dataclass(frozen=True, slots=True)
class MutationSuccess(MutationState[T]):
    value: T


@dataclass(frozen=True, slots=True)
class MutationError(MutationState[T]):
    exception: BaseException
    stack_trace: str | None = None


def when(
    state: QueryState[T],
    *,
    idle: Callable[[], R] | None = None,
    loading: Callable[[], R] | None = None,
    success: Callable[[T], R] | None = None,
    error: Callable[[BaseException, str | None], R] | None = None,
    refetching: Callable[[T], R] | None = None,
) -> R | None:
    """Dispatch on the active query state variant.

    Handlers are optional; a missing handler yields ``None``.

    Usage:
        label = when(
            runner.state,
            loading=lambda: "Loading...",
            success=lambda user: user.name,
            error=lambda exc, _: f"Failed: {exc}",
        )
    """
    if isinstance(state, QueryIdle):
        return idle() if idle else None
    if isinstance(state, QueryLoading):
        return loading() if loading else None
    if isinstance(state, QuerySuccess):
        return success(state.value) if success else None
    if isinstance(state, QueryError):
        return error(state.exception, state.stack_trace) if error else None
    if isinstance(state, QueryRefetching):
        return refetching(state.previous_data) if refetching else None
    raise TypeError(f"Unknown query state: {state!r}")


def map_state(state: QueryState[T], mapper: Callable[[T], R]) -> QueryState[R]:
    """Transform the data carried by a state, keeping its variant."""
    if isinstance(state, QuerySuccess):
        return QuerySuccess(mapper(state.value), fetched_at=state.fetched_at)
    if isinstance(state, QueryRefetching):
        return QueryRefetching(mapper(state.previous_data), fetched_at=state.fetched_at)
    if isinstance(state, QueryIdle):
        return QueryIdle()
    if isinstance(state, QueryLoading):
        return QueryLoading()
    if isinstance(state, QueryError):
        return QueryError(state.exception, stack_trace=state.stack_trace)
    raise TypeError(f"Unknown query state: {state!r}")


__all__ = [
    "MutationError",
    "MutationIdle",
    "MutationLoading",
    "MutationState",
    "MutationSuccess",
    "QueryError",
    "QueryIdle",
    "QueryLoading",
    "QueryRefetching",
    "QueryState",
    "QuerySuccess",
    "map_state",
    "when",
]

"""Write operations with optimistic-update hooks.

The runner guarantees hook ordering and exactly-once invocation per
``mutate()`` call. It never rolls anything back itself: ``on_mutate`` returns
a context (typically a cache snapshot) and ``on_error`` receives it to undo
the speculative write.
"""

from __future__ import annotations

import inspect
import logging
import traceback
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from querysync.errors import RunnerDisposedError
from querysync.options import MutationOptions
from querysync.retry import run_with_retry
from querysync.state import (
    MutationError,
    MutationIdle,
    MutationLoading,
    MutationState,
    MutationSuccess,
)
from querysync.types import CacheAccessor

T = TypeVar("T")
V = TypeVar("V")

logger = logging.getLogger(__name__)

MutationFn = Callable[[V], Awaitable[T]]


async def _call(hook: Callable[..., Any], *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class MutationRunner(Generic[T, V]):
    """Executes a mutation function and tracks its ``MutationState``.

    Protocol of one ``mutate(variables)`` call:

    1. ``on_mutate(variables)`` -> context
    2. ``fn(variables)`` (retried ``options.retry`` times, default none)
    3. success: ``Success(data)``, ``on_success(data, variables)``, mark
       ``options.invalidates`` patterns stale, ``on_settled``
    4. failure: ``Error(error)``, ``on_error(error, variables, context)``,
       ``on_settled``, then the error is re-raised to the caller

    An exception from ``on_mutate`` or ``on_success`` is treated like a
    failure of the mutation; ``on_error`` and ``on_settled`` errors are logged.
    """

    def __init__(
        self,
        fn: MutationFn[V, T],
        options: MutationOptions[T, V] | None = None,
        *,
        accessor: CacheAccessor | None = None,
    ) -> None:
        self._fn = fn
        self._options: MutationOptions[T, V] = (
            options if options is not None else MutationOptions()
        )
        self._accessor = accessor
        self._state: MutationState[T] = MutationIdle()
        self._listeners: list[Callable[[MutationState[T]], None]] = []
        self._active = True

    @property
    def state(self) -> MutationState[T]:
        return self._state

    @property
    def options(self) -> MutationOptions[T, V]:
        return self._options

    @property
    def data(self) -> T | None:
        return self._state.data

    @property
    def error(self) -> BaseException | None:
        return self._state.error

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def is_active(self) -> bool:
        return self._active

    def subscribe(self, listener: Callable[[MutationState[T]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    async def mutate(self, variables: V) -> T:
        """Run the mutation. Returns the data or re-raises the failure."""
        if not self._active:
            raise RunnerDisposedError("mutation")

        options = self._options
        self._set_state(MutationLoading())
        context: Any = None
        try:
            if options.on_mutate is not None:
                context = await _call(options.on_mutate, variables)
            data = await run_with_retry(
                lambda: self._fn(variables),
                retry=options.retry,
                delay_ms=options.retry_delay_ms,
                label="mutation",
            )
        except Exception as exc:
            await self._fail(exc, variables, context)
            raise

        self._set_state(MutationSuccess(data))
        try:
            if options.on_success is not None:
                await _call(options.on_success, data, variables)
            self._invalidate()
        except Exception as exc:
            await self._fail(exc, variables, context)
            raise
        await self._settle(data, None, variables, context)
        return data

    def reset(self) -> None:
        """Return to ``Idle``. The cache is not touched."""
        self._set_state(MutationIdle())

    def dispose(self) -> None:
        self._active = False
        self._listeners.clear()

    async def _fail(self, exc: Exception, variables: V, context: Any) -> None:
        logger.debug("Mutation failed: %r", exc)
        stack_trace = "".join(traceback.format_exception(exc))
        self._set_state(MutationError(exc, stack_trace=stack_trace))
        options = self._options
        try:
            if options.on_error is not None:
                await _call(options.on_error, exc, variables, context)
        except Exception:
            logger.exception("Error in mutation on_error hook")
        await self._settle(None, exc, variables, context)

    async def _settle(
        self, data: T | None, error: BaseException | None, variables: V, context: Any
    ) -> None:
        if self._options.on_settled is None:
            return
        try:
            await _call(self._options.on_settled, data, error, variables, context)
        except Exception:
            logger.exception("Error in mutation on_settled hook")

    def _invalidate(self) -> None:
        if self._accessor is None:
            return
        for pattern in self._options.invalidates:
            count = self._accessor.invalidate_queries(pattern, mark_as_stale=True)
            logger.debug("Mutation invalidated %d entries matching %r", count, pattern)

    def _set_state(self, state: MutationState[T]) -> None:
        if not self._active:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Mutation state listener error")


__all__ = ["MutationFn", "MutationRunner"]

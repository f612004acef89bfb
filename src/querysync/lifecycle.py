"""Application lifecycle and window focus signals.

Runners depend only on the ``LifecycleSignal`` / ``FocusSignal`` protocols.
``AppLifecycle`` and ``WindowFocus`` are in-process broadcasters that a host
application drives from whatever platform hooks it has.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


@runtime_checkable
class LifecycleSignal(Protocol):
    """Foreground/background transitions of the host application."""

    @property
    def is_background(self) -> bool:
        """Whether the application is currently backgrounded."""
        ...

    def on_foreground(self, callback: Callback) -> None:
        """Register a callback for background -> foreground transitions."""
        ...

    def on_background(self, callback: Callback) -> None:
        """Register a callback for foreground -> background transitions."""
        ...

    def remove_foreground(self, callback: Callback) -> None:
        """Unregister a foreground callback."""
        ...

    def remove_background(self, callback: Callback) -> None:
        """Unregister a background callback."""
        ...


@runtime_checkable
class FocusSignal(Protocol):
    """Window focus transitions, where the platform reports them."""

    @property
    def is_supported(self) -> bool:
        """Whether focus events are delivered at all."""
        ...

    def on_focus(self, callback: Callback) -> None:
        """Register a callback for blur -> focus transitions."""
        ...

    def on_blur(self, callback: Callback) -> None:
        """Register a callback for focus -> blur transitions."""
        ...

    def remove_focus(self, callback: Callback) -> None:
        """Unregister a focus callback."""
        ...

    def remove_blur(self, callback: Callback) -> None:
        """Unregister a blur callback."""
        ...


class AppState(Enum):
    RESUMED = "resumed"
    INACTIVE = "inactive"
    HIDDEN = "hidden"
    PAUSED = "paused"
    DETACHED = "detached"


def _fire(callbacks: list[Callback], event: str) -> None:
    for callback in list(callbacks):
        try:
            callback()
        except Exception:
            logger.exception("Error in %s callback", event)


def _discard(callbacks: list[Callback], callback: Callback) -> None:
    try:
        callbacks.remove(callback)
    except ValueError:
        pass


class AppLifecycle:
    """Broadcasts application state transitions.

    Only ``RESUMED`` counts as foreground. Foreground callbacks fire when the
    state becomes ``RESUMED`` from any other state; background callbacks fire
    when it leaves ``RESUMED``. Moves between two background states fire
    nothing.
    """

    def __init__(self, initial: AppState = AppState.RESUMED) -> None:
        self._state = initial
        self._foreground: list[Callback] = []
        self._background: list[Callback] = []

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def is_foreground(self) -> bool:
        return self._state is AppState.RESUMED

    @property
    def is_background(self) -> bool:
        return self._state is not AppState.RESUMED

    def on_foreground(self, callback: Callback) -> None:
        self._foreground.append(callback)

    def on_background(self, callback: Callback) -> None:
        self._background.append(callback)

    def remove_foreground(self, callback: Callback) -> None:
        _discard(self._foreground, callback)

    def remove_background(self, callback: Callback) -> None:
        _discard(self._background, callback)

    def set_state(self, state: AppState) -> None:
        previous, self._state = self._state, state
        if previous is state:
            return
        logger.debug("App state %s -> %s", previous.value, state.value)

        if state is AppState.RESUMED:
            _fire(self._foreground, "foreground")
        elif previous is AppState.RESUMED:
            _fire(self._background, "background")

    def resume(self) -> None:
        self.set_state(AppState.RESUMED)

    def pause(self) -> None:
        self.set_state(AppState.PAUSED)

    def dispose(self) -> None:
        self._foreground.clear()
        self._background.clear()


class WindowFocus:
    """Broadcasts window focus changes.

    With ``supported=False`` the instance never fires; runners skip
    subscribing to it entirely.
    """

    def __init__(self, *, supported: bool = True, focused: bool = True) -> None:
        self._supported = supported
        self._focused = focused
        self._focus: list[Callback] = []
        self._blur: list[Callback] = []

    @property
    def is_supported(self) -> bool:
        return self._supported

    @property
    def is_focused(self) -> bool:
        return self._focused

    def on_focus(self, callback: Callback) -> None:
        self._focus.append(callback)

    def on_blur(self, callback: Callback) -> None:
        self._blur.append(callback)

    def remove_focus(self, callback: Callback) -> None:
        _discard(self._focus, callback)

    def remove_blur(self, callback: Callback) -> None:
        _discard(self._blur, callback)

    def set_focus(self, focused: bool) -> None:
        if not self._supported or focused == self._focused:
            return
        self._focused = focused
        logger.debug("Window %s", "focused" if focused else "blurred")
        _fire(self._focus if focused else self._blur, "focus" if focused else "blur")

    def dispose(self) -> None:
        self._focus.clear()
        self._blur.clear()


__all__ = [
    "AppLifecycle",
    "AppState",
    "FocusSignal",
    "LifecycleSignal",
    "WindowFocus",
]

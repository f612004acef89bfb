"""Exceptions raised by querysync itself.

Errors raised by user-supplied fetch and mutation functions are never
wrapped; they reach query state and callers unchanged.
"""

from __future__ import annotations


class QuerySyncError(Exception):
    """Base class for all querysync errors."""


class RunnerDisposedError(QuerySyncError):
    """An operation was attempted on a runner after ``dispose()``."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Runner for {key!r} has been disposed")
        self.key = key

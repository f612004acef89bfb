"""Shared pytest fixtures."""

from collections.abc import Iterator

import pytest

from querysync import AppLifecycle, QueryCache, QueryClient, WindowFocus


@pytest.fixture
def cache() -> Iterator[QueryCache]:
    """Create a fresh QueryCache for each test."""
    cache = QueryCache(max_size=10)
    yield cache
    cache.dispose()


@pytest.fixture
def lifecycle() -> AppLifecycle:
    return AppLifecycle()


@pytest.fixture
def focus() -> WindowFocus:
    return WindowFocus()


@pytest.fixture
def client(
    cache: QueryCache, lifecycle: AppLifecycle, focus: WindowFocus
) -> Iterator[QueryClient]:
    """QueryClient wired to the per-test cache and signals."""
    client = QueryClient(cache, lifecycle=lifecycle, focus=focus)
    yield client
    client.dispose()

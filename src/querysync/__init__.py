"""querysync - Cached, self-refreshing async queries and mutations for Python."""

# Cache store
from querysync.cache import QueryCache, get_default_cache, set_default_cache

# Composition root
from querysync.client import QueryClient

# Duration parsing
from querysync.duration import parse_duration
from querysync.errors import QuerySyncError, RunnerDisposedError
from querysync.infinite import InfiniteData, InfiniteQueryRunner
from querysync.keys import query_key

# Lifecycle signals
from querysync.lifecycle import (
    AppLifecycle,
    AppState,
    FocusSignal,
    LifecycleSignal,
    WindowFocus,
)
from querysync.mutation import MutationRunner
from querysync.options import InfiniteQueryOptions, MutationOptions, QueryOptions
from querysync.query import QueryRunner

# State variants
from querysync.state import (
    MutationError,
    MutationIdle,
    MutationLoading,
    MutationState,
    MutationSuccess,
    QueryError,
    QueryIdle,
    QueryLoading,
    QueryRefetching,
    QueryState,
    QuerySuccess,
    map_state,
    when,
)

# Core types
from querysync.types import (
    CacheAccessor,
    CacheEntry,
    CacheEvent,
    CacheEventType,
    CacheKey,
    CacheStats,
    Duration,
)

__version__ = "0.1.0"

__all__ = [
    "AppLifecycle",
    "AppState",
    "CacheAccessor",
    "CacheEntry",
    "CacheEvent",
    "CacheEventType",
    "CacheKey",
    "CacheStats",
    "Duration",
    "FocusSignal",
    "InfiniteData",
    "InfiniteQueryOptions",
    "InfiniteQueryRunner",
    "LifecycleSignal",
    "MutationError",
    "MutationIdle",
    "MutationLoading",
    "MutationOptions",
    "MutationRunner",
    "MutationState",
    "MutationSuccess",
    "QueryCache",
    "QueryClient",
    "QueryError",
    "QueryIdle",
    "QueryLoading",
    "QueryOptions",
    "QueryRefetching",
    "QueryRunner",
    "QueryState",
    "QuerySuccess",
    "QuerySyncError",
    "RunnerDisposedError",
    "WindowFocus",
    "get_default_cache",
    "map_state",
    "parse_duration",
    "query_key",
    "set_default_cache",
    "when",
]

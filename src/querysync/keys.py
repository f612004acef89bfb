"""Cache key construction.

Two logically identical requests always map to the same key:

    query_key("user", 1)                 # "user-1"
    query_key("posts", {"page": 2})      # 'posts-{"page":2}'
    query_key(("user", 1))               # "user-1"
"""

from __future__ import annotations

import json
from typing import Any

from querysync.types import CacheKey

_SEPARATOR = "-"
_SCALARS = (str, int, float, bool)


def serialize_param(param: Any) -> str:
    """Serialize one key parameter to a stable string."""
    if param is None:
        return "null"
    if isinstance(param, _SCALARS):
        return str(param)
    return json.dumps(param, sort_keys=True, separators=(",", ":"), default=str)


def query_key(base: CacheKey, *params: Any) -> str:
    """Build a cache key from a base name and optional parameters.

    A tuple base is treated as ``(base, *params)``, so structurally equal
    tuples yield equal keys.
    """
    if isinstance(base, tuple):
        if not base:
            raise ValueError("Cache key tuple must not be empty")
        head, *rest = base
        return query_key(head, *rest, *params)

    parts = [str(base), *(serialize_param(p) for p in params)]
    return _SEPARATOR.join(parts)


def matches_pattern(key: str, pattern: str) -> bool:
    """Substring containment, used for hierarchical invalidation."""
    return pattern in key

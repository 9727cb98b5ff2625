"""Cache plugins.

Brief: Defines the CachePlugin interface and the bundled cache backends.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

from .base import CacheError, CachePlugin, cache_aliases
from .in_memory_ttl import InMemoryTTLCache
from .none import NullCache
from .redis_cache import RedisCache
from .registry import load_cache_plugin

__all__ = [
    "CacheError",
    "CachePlugin",
    "InMemoryTTLCache",
    "NullCache",
    "RedisCache",
    "cache_aliases",
    "load_cache_plugin",
]

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Tuple

from cachetools import TLRUCache

from .base import CachePlugin, cache_aliases


def _time_to_use(_key: str, value: Tuple[int, str], now: float) -> float:
    """Brief: Expiry timestamp for a TLRUCache entry stored as (ttl, value)."""

    return now + value[0]


@cache_aliases("in_memory_ttl", "memory", "ttl")
class InMemoryTTLCache(CachePlugin):
    """In-memory TTL cache plugin.

    Brief:
      Process-local CachePlugin backed by `cachetools.TLRUCache` so each entry
      expires on its own TTL. Useful for single-instance deployments and
      tests; it is not shared between processes.

    Inputs:
      - **config:
          - maxsize: Positive int bound on stored entries (default 10000). The
            least recently used entry is evicted when the bound is reached.
      - timer: Optional monotonic clock callable (tests inject a fake clock).

    Outputs:
      - InMemoryTTLCache instance.
    """

    def __init__(
        self, timer: Optional[Callable[[], float]] = None, **config: object
    ) -> None:
        try:
            maxsize = int(config.get("maxsize", 10000) or 10000)
        except (TypeError, ValueError):
            maxsize = 10000
        self.maxsize = max(1, maxsize)
        # cachetools caches are not thread-safe on their own.
        self._lock = threading.Lock()
        self._cache: TLRUCache = TLRUCache(
            maxsize=self.maxsize,
            ttu=_time_to_use,
            timer=timer or time.monotonic,
        )

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._cache.get(key)
        if entry is None:
            return None
        return entry[1]

    def set(self, key: str, value: str, ttl: int) -> None:
        ttl_int = int(ttl)
        if ttl_int <= 0:
            return
        with self._lock:
            self._cache[key] = (ttl_int, value)

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)

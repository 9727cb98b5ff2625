from __future__ import annotations

from typing import Optional

from .base import CachePlugin, cache_aliases


@cache_aliases("none", "null", "disabled")
class NullCache(CachePlugin):
    """Brief: Cache plugin that disables caching.

    Inputs:
      - **config: Ignored.

    Outputs:
      - NullCache instance whose get() always misses and set() does nothing.
    """

    def __init__(self, **config: object) -> None:
        pass

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str, ttl: int) -> None:
        return None

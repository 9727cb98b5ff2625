"""Interface shared by every answer cache backend."""

from __future__ import annotations

from typing import Callable, Optional, Type


class CacheError(Exception):
    """
    Brief: The cache backend could not be consulted or written.

    Inputs:
      - message: description

    Outputs:
      - Exception instance

    Notes:
      - A miss is not an error; get() returns None for it.
    """

    pass


def cache_aliases(*aliases: str) -> Callable[[Type["CachePlugin"]], Type["CachePlugin"]]:
    """Brief: Class decorator recording the config names a backend answers to.

    Inputs:
      - *aliases: Names accepted in ``cache.module``.

    Outputs:
      - Decorator that stores the names on ``cls.aliases``.

    Example:
      >>> from tierdns.cache_plugins.base import CachePlugin, cache_aliases
      >>> @cache_aliases('memcache', 'memcached')
      ... class MemcacheCache(CachePlugin):
      ...     pass
      >>> MemcacheCache.aliases
      ('memcache', 'memcached')
    """

    def _apply(cls: Type["CachePlugin"]) -> Type["CachePlugin"]:
        cls.aliases = tuple(aliases)
        return cls

    return _apply


class CachePlugin:
    """Base class for the shared answer cache.

    Brief:
      CachePlugin is a string key/value store with per-entry expiry. Keys are
      ``"<qname>:<qtype>"`` and values are delimiter-joined record strings.
      Instances are created once at startup and shared by all request
      handlers, so implementations must tolerate concurrent callers.
    """

    aliases: tuple[str, ...] = ()

    def get(self, key: str) -> Optional[str]:
        """Brief: Return the value stored under key.

        Inputs:
          - key: ``"<qname>:<qtype>"``.

        Outputs:
          - str | None: The stored value, or None when absent or expired.

        Raises:
          - CacheError: The backend could not be consulted.
        """

        raise NotImplementedError(f"{type(self).__name__} does not implement get()")

    def set(self, key: str, value: str, ttl: int) -> None:
        """Brief: Store value under key for ttl seconds.

        Inputs:
          - key: ``"<qname>:<qtype>"``.
          - value: Delimiter-joined zone lines.
          - ttl: Lifetime in seconds; values <= 0 store nothing.

        Raises:
          - CacheError: The backend rejected or could not perform the write.
        """

        raise NotImplementedError(f"{type(self).__name__} does not implement set()")

    def ping(self) -> bool:
        """Brief: True when the backend is reachable (checked once at startup)."""

        return True

    def close(self) -> None:
        """Release backend resources at shutdown."""

        return None

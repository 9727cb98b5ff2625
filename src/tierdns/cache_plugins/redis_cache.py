"""Answer cache stored in Redis (or Valkey) with native key expiry."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import redis
from redis.backoff import NoBackoff
from redis.retry import Retry

from .base import CacheError, CachePlugin, cache_aliases

logger = logging.getLogger("tierdns.cache.redis")

_DEFAULT_PORT = 6379


def _as_timeout(value: object, default: float) -> float:
    """Brief: Coerce a socket timeout config value to positive seconds.

    Inputs:
      - value: Raw config value (None, int, float or str).
      - default: Fallback seconds.

    Outputs:
      - float: Timeout in seconds; never unbounded.
    """

    try:
        seconds = float(value) if value is not None else float(default)
    except (TypeError, ValueError):
        seconds = float(default)
    return seconds if seconds > 0 else float(default)


def _as_int(value: object, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _credential(value: object) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@cache_aliases("redis", "valkey")
class RedisCache(CachePlugin):
    """Redis/Valkey-backed answer cache.

    Brief:
      Each entry is one Redis string written with SET .. EX. Concurrent
      writers race and the last write wins.
      Commands are never retried, so an unreachable server fails fast and
      the pipeline treats the CacheError as a miss.

    Inputs:
      - **config:
          - url (str): connection URL such as redis://cache:6379/1. Wins
            over host/port/db when set.
          - host, port, db: server address (localhost, 6379, 0).
          - username, password: ACL credentials, both optional.
          - socket_timeout, socket_connect_timeout: seconds (5 each).
          - namespace (str): prefix prepended to every key ('').

    Outputs:
      - RedisCache instance.

    Example:
      cache:
        module: redis
        config:
          url: redis://localhost:6379/0
    """

    def __init__(self, **config: object) -> None:
        namespace = config.get("namespace")
        self.namespace: str = namespace if isinstance(namespace, str) else ""

        options: Dict[str, Any] = {
            "decode_responses": True,
            # One attempt per command; a failure surfaces as a cache miss at once.
            "retry": Retry(NoBackoff(), 0),
            "socket_timeout": _as_timeout(config.get("socket_timeout"), 5.0),
            "socket_connect_timeout": _as_timeout(
                config.get("socket_connect_timeout"), 5.0
            ),
        }

        url = config.get("url")
        url = url.strip() if isinstance(url, str) else ""
        if url:
            self._client = redis.Redis.from_url(url, **options)
            self._target = url
            return

        host = str(config.get("host") or "localhost")
        port = _as_int(config.get("port"), _DEFAULT_PORT)
        db = _as_int(config.get("db"), 0)
        self._client = redis.Redis(
            host=host,
            port=port,
            db=db,
            username=_credential(config.get("username")),
            password=_credential(config.get("password")),
            **options,
        )
        self._target = f"{host}:{port}/{db}"

    def _redis_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str) -> Optional[str]:
        """Brief: Fetch the string stored under key.

        Inputs:
          - key: Cache key string.

        Outputs:
          - str | None: Cached value, or None when the key does not exist.

        Raises:
          - CacheError: on connection, timeout or protocol failures.
        """

        try:
            value = self._client.get(self._redis_key(key))
        except (redis.RedisError, OSError) as exc:
            raise CacheError(f"redis get {key!r} failed: {exc}") from exc
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return str(value)

    def set(self, key: str, value: str, ttl: int) -> None:
        """Brief: Store value under key with a TTL in seconds.

        Inputs:
          - key: Cache key string.
          - value: Value to store.
          - ttl: int time-to-live in seconds; non-positive values are ignored.

        Outputs:
          - None.

        Raises:
          - CacheError: on connection, timeout or protocol failures.
        """

        ttl_int = int(ttl)
        if ttl_int <= 0:
            return
        try:
            self._client.set(self._redis_key(key), value, ex=ttl_int)
        except (redis.RedisError, OSError) as exc:
            raise CacheError(f"redis set {key!r} failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except (redis.RedisError, OSError) as exc:
            logger.error("Could not connect to Redis at %s: %s", self._target, exc)
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except (redis.RedisError, OSError):  # pragma: no cover - shutdown only
            logger.debug("Error closing Redis client", exc_info=True)

"""Brief: Unit tests for the in-memory TTL cache plugin.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import threading

from tierdns.cache_plugins.in_memory_ttl import InMemoryTTLCache


class FakeClock:
    """Brief: Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_their_ttl() -> None:
    """Brief: Each entry expires on its own TTL.

    Inputs:
      - None

    Outputs:
      - None
    """

    clock = FakeClock()
    cache = InMemoryTTLCache(timer=clock)
    cache.set("short", "a", 10)
    cache.set("long", "b", 300)

    assert cache.get("short") == "a"
    clock.now += 11
    assert cache.get("short") is None
    assert cache.get("long") == "b"
    assert len(cache) == 1

    clock.now += 300
    assert cache.get("long") is None
    assert len(cache) == 0


def test_overwrite_resets_ttl() -> None:
    clock = FakeClock()
    cache = InMemoryTTLCache(timer=clock)
    cache.set("k", "v1", 10)
    clock.now += 8
    cache.set("k", "v2", 10)
    clock.now += 8
    assert cache.get("k") == "v2"


def test_non_positive_ttl_is_not_stored() -> None:
    cache = InMemoryTTLCache()
    cache.set("k", "v", 0)
    cache.set("k2", "v", -5)
    assert cache.get("k") is None
    assert len(cache) == 0


def test_maxsize_bound_evicts() -> None:
    cache = InMemoryTTLCache(maxsize=2)
    cache.set("a", "1", 60)
    cache.set("b", "2", 60)
    cache.set("c", "3", 60)
    assert len(cache) == 2
    assert cache.get("c") == "3"


def test_invalid_maxsize_falls_back() -> None:
    assert InMemoryTTLCache(maxsize="lots").maxsize == 10000
    assert InMemoryTTLCache(maxsize=-3).maxsize == 1


def test_concurrent_writers_do_not_corrupt_state() -> None:
    cache = InMemoryTTLCache(maxsize=100000)

    def _writer(prefix: str) -> None:
        for i in range(500):
            cache.set(f"{prefix}:{i}", str(i), 60)
            cache.get(f"{prefix}:{i // 2}")

    threads = [threading.Thread(target=_writer, args=(f"t{n}",)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(cache) == 2000

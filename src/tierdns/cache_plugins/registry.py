"""Cache backend lookup by alias or dotted import path.

Brief:
  Every module in ``tierdns.cache_plugins`` is scanned once for CachePlugin
  subclasses. A class is reachable under each name in its ``aliases`` tuple
  and under its snake_cased class name with the ``Cache`` suffix removed
  (``InMemoryTTLCache`` -> ``in_memory_ttl``). Backends living outside the
  package are loaded by dotted path, e.g. ``mypkg.caches.MemcacheCache``.

Inputs:
  - The ``cache:`` config value.

Outputs:
  - CachePlugin classes and instances.
"""

from __future__ import annotations

import difflib
import functools
import importlib
import inspect
import pkgutil
import re
from typing import Any, Dict, Mapping, Tuple, Type

from .base import CachePlugin

DEFAULT_CACHE_MODULE = "redis"
PLUGIN_PACKAGE = "tierdns.cache_plugins"

_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def _normalize(alias: str) -> str:
    return alias.strip().lower().replace("-", "_")


def _class_alias(cls: Type[CachePlugin]) -> str:
    name = cls.__name__
    if name.endswith("Cache") and name != "Cache":
        name = name[: -len("Cache")]
    return _normalize(_WORD_BOUNDARY.sub("_", name))


def _register(registry: Dict[str, Type[CachePlugin]], cls: Type[CachePlugin]) -> None:
    names = {_normalize(a) for a in getattr(cls, "aliases", ()) or ()}
    names.add(_class_alias(cls))
    for name in names:
        owner = registry.setdefault(name, cls)
        if owner is not cls:
            raise ValueError(
                f"cache alias {name!r} is claimed by both "
                f"{owner.__module__}.{owner.__qualname__} and {cls.__module__}.{cls.__qualname__}"
            )


@functools.lru_cache(maxsize=4)
def discover_cache_plugins(
    package_name: str = PLUGIN_PACKAGE,
) -> Dict[str, Type[CachePlugin]]:
    """Brief: Map every alias in package_name to its CachePlugin class.

    Inputs:
      - package_name: Package to scan (its direct and nested modules).

    Outputs:
      - Dict[str, Type[CachePlugin]] keyed by normalized alias.

    Raises:
      - ValueError: two classes claim the same alias.
    """

    package = importlib.import_module(package_name)
    registry: Dict[str, Type[CachePlugin]] = {}
    for info in pkgutil.walk_packages(package.__path__, package.__name__ + "."):
        module = importlib.import_module(info.name)
        for _, obj in inspect.getmembers(module, inspect.isclass):
            # Only register a class from the module that defines it.
            if obj.__module__ != module.__name__:
                continue
            if issubclass(obj, CachePlugin) and obj is not CachePlugin:
                _register(registry, obj)
    return registry


def _import_class(path: str) -> Type[CachePlugin]:
    module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"invalid cache plugin path {path!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    if not (inspect.isclass(obj) and issubclass(obj, CachePlugin)):
        raise TypeError(f"{path} is not a CachePlugin subclass")
    return obj


def get_cache_plugin_class(identifier: str) -> Type[CachePlugin]:
    """Brief: Resolve an alias or dotted path to a CachePlugin class.

    Inputs:
      - identifier: 'redis', 'memory', 'none', ... or 'pkg.module.Class'.

    Outputs:
      - CachePlugin subclass.

    Raises:
      - KeyError: unknown alias (the message lists close matches).
      - TypeError/ValueError/ImportError: bad dotted path.
    """

    ident = str(identifier).strip()
    if "." in ident:
        return _import_class(ident)

    registry = discover_cache_plugins()
    key = _normalize(ident)
    if key in registry:
        return registry[key]
    close = difflib.get_close_matches(key, registry, n=3)
    hint = f" Did you mean: {', '.join(close)}?" if close else ""
    raise KeyError(
        f"unknown cache plugin {identifier!r} (available: {', '.join(sorted(registry))}).{hint}"
    )


def _split_cache_config(cfg: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
    if "module" in cfg and cfg["module"] is None:
        # An explicit null turns caching off; a missing key keeps the default.
        module = "none"
    else:
        module = str(cfg.get("module") or "").strip() or DEFAULT_CACHE_MODULE
    options = cfg.get("config")
    return module, dict(options) if isinstance(options, Mapping) else {}


def load_cache_plugin(cfg: Any) -> CachePlugin:
    """Brief: Instantiate the cache backend described by the ``cache:`` value.

    Inputs:
      - cfg: One of
        - None: the default Redis backend on localhost:6379.
        - str: alias or dotted path, constructed without options.
        - mapping: {"module": <str|None>, "config": {...}}; options are
          passed as keyword arguments and ``module: null`` disables caching.

    Outputs:
      - CachePlugin instance.

    Example:
      cache:
        module: redis
        config:
          url: redis://localhost:6379/0
    """

    if cfg is None:
        return get_cache_plugin_class(DEFAULT_CACHE_MODULE)()
    if isinstance(cfg, str):
        return get_cache_plugin_class(cfg)()
    if isinstance(cfg, Mapping):
        module, options = _split_cache_config(cfg)
        return get_cache_plugin_class(module)(**options)
    raise TypeError("cache config must be a mapping, string, or null")

"""Turn a YAML file on disk into the objects the server runs with.

Brief:
  Loading happens in three steps: read the YAML, layer environment and
  ``-v/--var`` values over the file's ``vars`` block, then expand and
  validate (see config_schema). The build_* helpers then construct the
  listener settings, RecordStore, cache plugin, upstream and pipeline.

Inputs:
  - A config path, CLI variable assignments and the process environment.

Outputs:
  - A validated config dict and runtime objects built from it.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from ..cache_plugins.base import CachePlugin
from ..cache_plugins.registry import load_cache_plugin
from ..records import RecordStore
from ..resolver.pipeline import PipelineSettings, ResolutionPipeline
from ..upstream import UpstreamResolver
from .config_schema import VAR_NAME_PATTERN, validate_config

DEFAULT_CONFIG_PATH = "./config/config.yaml"
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 53


def _is_var_key(key: str) -> bool:
    return bool(key) and bool(VAR_NAME_PATTERN.fullmatch(key))


def _yaml_scalar(text: str) -> Any:
    """Brief: Interpret an env/CLI variable value the way YAML would.

    Inputs:
      - text: Raw string, e.g. "5353", "[a, b]" or "hello".

    Outputs:
      - Any: The YAML value, or text unchanged when it is not valid YAML.
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _cli_assignment(assignment: str) -> Tuple[str, Any]:
    name, sep, raw = assignment.partition("=")
    name = name.strip()
    if not sep:
        raise ValueError(f"-v/--var expects NAME=VALUE, got {assignment!r}")
    if not _is_var_key(name):
        raise ValueError(
            f"variable name {name!r} must be upper case and match [A-Z_][A-Z0-9_]*"
        )
    return name, _yaml_scalar(raw)


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Layer environment and CLI variables over cfg['vars'].

    Inputs:
      - cfg: Parsed YAML mapping; its 'vars' entry is replaced.
      - cli_vars: NAME=VALUE strings from -v/--var, applied last.
      - environ: Environment to read (os.environ when omitted). Only names
        that look like config variables are picked up.

    Outputs:
      - dict: The merged variables, also stored as cfg['vars'].

    Example:
      >>> cfg = {'vars': {'TTL': 100}}
      >>> parse_config_variables(cfg, cli_vars=['TTL=300'], environ={})['TTL']
      300
    """

    declared = cfg.get("vars") or {}
    if not isinstance(declared, dict):
        raise ValueError("config.vars must be a mapping when present")

    layers: List[Dict[str, Any]] = [dict(declared)]
    source = os.environ if environ is None else environ
    layers.append(
        {
            name: _yaml_scalar(str(value))
            for name, value in source.items()
            if isinstance(name, str) and _is_var_key(name)
        }
    )
    layers.append(dict(_cli_assignment(a) for a in cli_vars or []))

    variables: Dict[str, Any] = {}
    for layer in layers:
        variables.update(layer)
    cfg["vars"] = variables
    return variables


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Load config_path, apply variables and validate it.

    Inputs:
      - config_path: YAML file to read.
      - cli_vars: NAME=VALUE overrides from the command line.
      - environ: Environment mapping (os.environ when omitted).

    Outputs:
      - dict: The validated configuration with variables expanded.

    Raises:
      - OSError: the file cannot be read.
      - ValueError: bad YAML, bad variables or schema violations.
    """

    with open(config_path, "r", encoding="utf-8") as fh:
        try:
            loaded = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc
    cfg = {} if loaded is None else loaded
    if not isinstance(cfg, dict):
        raise ValueError(f"Configuration root in {config_path} must be a mapping")

    parse_config_variables(cfg, cli_vars=cli_vars, environ=environ)
    validate_config(cfg, config_path=config_path)
    return cfg


def normalize_listen_config(cfg: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Brief: Resolve UDP and TCP listener settings with shared defaults.

    Inputs:
      - cfg: Validated configuration mapping.

    Outputs:
      - {'udp': {...}, 'tcp': {...}} each with enabled/host/port keys.

    Example:
      >>> normalize_listen_config({"listen": {"port": 5353, "tcp": {"enabled": False}}})["tcp"]
      {'enabled': False, 'host': '0.0.0.0', 'port': 5353}
    """

    listen_cfg = cfg.get("listen") or {}
    default_host = str(listen_cfg.get("host", DEFAULT_LISTEN_HOST))
    default_port = int(listen_cfg.get("port", DEFAULT_LISTEN_PORT))

    out: Dict[str, Dict[str, Any]] = {}
    for proto in ("udp", "tcp"):
        sub = listen_cfg.get(proto) or {}
        out[proto] = {
            "enabled": bool(sub.get("enabled", True)),
            "host": str(sub.get("host", default_host)),
            "port": int(sub.get("port", default_port)),
        }
    return out


def build_pipeline_settings(cfg: Dict[str, Any]) -> PipelineSettings:
    """Brief: Collect cache lifetime and answer TTL overrides from config."""

    defaults = PipelineSettings()
    cache_cfg = cfg.get("cache")
    cache_ttl = defaults.cache_ttl
    if isinstance(cache_cfg, dict) and cache_cfg.get("ttl") is not None:
        cache_ttl = int(cache_cfg["ttl"])

    answer_ttl = cfg.get("answer_ttl") or {}
    return PipelineSettings(
        cache_ttl=cache_ttl,
        static_answer_ttl=int(answer_ttl.get("static", defaults.static_answer_ttl)),
        cache_answer_ttl=int(answer_ttl.get("cache", defaults.cache_answer_ttl)),
    )


def build_record_store(cfg: Dict[str, Any]) -> RecordStore:
    """Brief: Build the static record store.

    Inputs:
      - cfg: Validated configuration mapping.

    Outputs:
      - RecordStore from cfg['records']; the bundled sample zone when the key
        is absent. An explicit empty mapping yields an empty store.
    """

    if "records" not in cfg:
        return RecordStore.default()
    return RecordStore(cfg.get("records") or {})


def build_cache(cfg: Dict[str, Any]) -> CachePlugin:
    """Brief: Instantiate the configured cache plugin (ttl is not a plugin option)."""

    cache_cfg = cfg.get("cache")
    if isinstance(cache_cfg, dict):
        cache_cfg = {k: v for k, v in cache_cfg.items() if k != "ttl"}
    return load_cache_plugin(cache_cfg)


def build_pipeline(
    cfg: Dict[str, Any], *, cache: Optional[CachePlugin] = None
) -> ResolutionPipeline:
    """Brief: Wire RecordStore, cache, and upstream into a ResolutionPipeline.

    Inputs:
      - cfg: Validated configuration mapping.
      - cache: Optional pre-built cache plugin (built from cfg when omitted).

    Outputs:
      - ResolutionPipeline instance.
    """

    return ResolutionPipeline(
        build_record_store(cfg),
        cache if cache is not None else build_cache(cfg),
        UpstreamResolver.from_config(cfg.get("upstream")),
        build_pipeline_settings(cfg),
    )

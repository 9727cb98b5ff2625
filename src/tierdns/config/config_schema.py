"""JSON Schema-based validation for tierdns YAML configuration.

This module expands configuration variables and validates the main
``config.yaml`` against the JSON Schema document shipped next to it as
``config-schema.json``.
"""

from __future__ import annotations

import copy
import functools
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft202012Validator, ValidationError

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")
VAR_NAME_PATTERN = re.compile(r"[A-Z_][A-Z0-9_]*")


class _VariableExpander:
    """Resolve `${KEY}` / `$KEY` references against a vars mapping.

    Variables may reference each other; each one is resolved at most once
    and a reference cycle raises ValueError naming the chain.
    """

    def __init__(self, variables: Dict[str, Any]) -> None:
        self.variables = variables
        self._done: Dict[str, Any] = {}

    def value_of(self, name: str, chain: Tuple[str, ...] = ()) -> Any:
        if name in self._done:
            return self._done[name]
        if name in chain:
            raise ValueError(
                "config.vars contains a cycle: " + " -> ".join(chain + (name,))
            )
        value = self.expand(self.variables[name], chain + (name,))
        self._done[name] = value
        return value

    def _whole_reference(self, text: str) -> Optional[str]:
        if text.startswith("${") and text.endswith("}"):
            name = text[2:-1]
        elif text.startswith("$"):
            name = text[1:]
        else:
            return None
        return name if name in self.variables else None

    @staticmethod
    def _as_text(value: Any) -> str:
        if isinstance(value, bool):
            return str(value).lower()
        if value is None:
            return "null"
        if isinstance(value, (list, dict)):
            return json.dumps(value)
        return str(value)

    def expand(self, node: Any, chain: Tuple[str, ...] = ()) -> Any:
        if isinstance(node, dict):
            return {k: self.expand(v, chain) for k, v in node.items()}
        if isinstance(node, list):
            return [self.expand(item, chain) for item in node]
        if not isinstance(node, str):
            return node

        whole = self._whole_reference(node)
        if whole is not None:
            # A lone reference injects the value with its YAML type intact.
            return copy.deepcopy(self.value_of(whole, chain))

        def _substitute(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name not in self.variables:
                return match.group(0)
            return self._as_text(self.value_of(name, chain))

        return _VAR_PATTERN.sub(_substitute, node)


def expand_variables(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level `vars` into the config and remove the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - A string that is exactly `$KEY` or `${KEY}` becomes the variable's
        value with its type preserved (int, list, mapping, ...).
      - `${KEY}` inside a longer string is replaced by the value's text.
      - References to undefined variables are left as written.
      - Cycles between variables raise ValueError.

    Example:
      >>> cfg = {"vars": {"PORT": 5353}, "listen": {"port": "${PORT}"}}
      >>> expand_variables(cfg)
      >>> cfg
      {'listen': {'port': 5353}}
    """

    variables = cfg.pop("vars", None)
    if variables is None:
        return
    if not isinstance(variables, dict):
        raise ValueError("config.vars must be a mapping when present")
    bad = [k for k in variables if not isinstance(k, str) or not VAR_NAME_PATTERN.fullmatch(k)]
    if bad:
        raise ValueError(f"config.vars keys {bad!r} must match [A-Z_][A-Z0-9_]*")

    expander = _VariableExpander(variables)
    for name in variables:
        expander.value_of(name)
    for key in list(cfg):
        cfg[key] = expander.expand(cfg[key])


def get_default_schema_path() -> Path:
    """Brief: Location of the bundled JSON Schema document."""

    return Path(__file__).resolve().parent / "config-schema.json"


@functools.lru_cache(maxsize=4)
def _validator_for(schema_path: Path) -> Draft202012Validator:
    with schema_path.open("r", encoding="utf-8") as f:
        return Draft202012Validator(json.load(f))


def _describe(error: ValidationError) -> str:
    where = "/".join(str(p) for p in error.absolute_path) or "<root>"
    return f"  - {where}: {error.message}"


def _report(errors: List[ValidationError], config_path: Optional[str]) -> str:
    header = "Invalid configuration" + (f" in {config_path}" if config_path else "") + ":"
    return "\n".join([header] + [_describe(e) for e in errors])


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> None:
    """Brief: Expand variables, then check cfg against the JSON Schema.

    Inputs:
      - cfg: Dict loaded from YAML (mutated: variables are expanded).
      - schema_path: Optional explicit path to a JSON Schema file.
      - config_path: Optional YAML path, used only in error messages.
      - unknown_keys: What to do when the only problems are keys the schema
        does not know: "ignore", "warn" (default, logged) or "error".

    Outputs:
      - None on success.

    Raises:
      - ValueError: invalid variables, schema violations, or unknown keys
        under the "error" policy. The message lists every offending path.

    Example:
      >>> import yaml
      >>> data = yaml.safe_load("listen: {host: 127.0.0.1, port: 5353}\\nupstream: 1.1.1.1:53")
      >>> validate_config(data)
    """
    if unknown_keys not in ("ignore", "warn", "error"):
        raise ValueError(f"unknown_keys must be ignore, warn or error, not {unknown_keys!r}")

    expand_variables(cfg)

    validator = _validator_for(Path(schema_path or get_default_schema_path()))
    errors = sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path])
    if not errors:
        return

    unknown_only = all(e.validator == "additionalProperties" for e in errors)
    if not unknown_only or unknown_keys == "error":
        raise ValueError(_report(errors, config_path))
    if unknown_keys == "warn":
        logger.warning(_report(errors, config_path))

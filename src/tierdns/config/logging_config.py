"""Process-wide logging setup for tierdns.

Brief:
  Every tierdns module logs through a ``tierdns.<component>`` logger; this
  module attaches the handlers to the root logger once at startup. Console and
  file lines look like::

    2024-05-01T12:00:00Z [info] tierdns.pipeline: Found static record for example.com. (Type A)

  Syslog lines drop the timestamp because the daemon stamps them itself.

Inputs:
  - The ``logging:`` mapping from config.yaml.

Outputs:
  - Configured root logger.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

LOG_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"

_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_SHORT_TAGS = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "crit",
}


def level_from_name(name: Any, default: int = logging.INFO) -> int:
    """Brief: Map a config level name to a logging level.

    Inputs:
      - name: 'debug', 'info', 'warn', 'error', 'crit' (any case) or None.
      - default: Level returned for unknown names.

    Outputs:
      - int logging level.

    Example:
      >>> level_from_name("WARN")
      30
    """

    return _LEVEL_NAMES.get(str(name).strip().lower(), default)


def _tag(record: logging.LogRecord) -> str:
    record.level_tag = "[%s]" % _SHORT_TAGS.get(record.levelno, f"lvl{record.levelno}")
    return record.level_tag


class SyslogFormatter(logging.Formatter):
    """Formatter for syslog output without timestamps (syslog adds its own)."""

    def format(self, record):
        return f"{_tag(record)} {record.name}: {record.getMessage()}"


class BracketLevelFormatter(logging.Formatter):
    """Formatter with bracketed lowercase level tags and UTC timestamps."""

    def formatTime(self, record, datefmt=None):
        stamp = datetime.fromtimestamp(record.created, timezone.utc)
        return stamp.strftime(datefmt or "%Y-%m-%dT%H:%M:%SZ")

    def format(self, record):
        _tag(record)
        return super().format(record)


def _syslog_handler(syslog_cfg: Any) -> logging.Handler:
    options: Mapping[str, Any] = syslog_cfg if isinstance(syslog_cfg, Mapping) else {}
    facility_name = str(options.get("facility", "user")).upper()
    facility = getattr(
        logging.handlers.SysLogHandler,
        f"LOG_{facility_name}",
        logging.handlers.SysLogHandler.LOG_USER,
    )
    handler = logging.handlers.SysLogHandler(
        address=options.get("address", "/dev/log"), facility=facility
    )
    handler.setFormatter(SyslogFormatter())
    return handler


def _build_handlers(cfg: Mapping[str, Any]) -> List[logging.Handler]:
    formatter = BracketLevelFormatter(fmt=LOG_FORMAT)
    handlers: List[logging.Handler] = []

    if cfg.get("stderr", True):
        handlers.append(logging.StreamHandler(sys.stderr))

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        handlers.append(logging.FileHandler(path, mode="a", encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Configure the root logger from the ``logging:`` config section.

    Args:
        cfg: Mapping with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: log to stderr (default: True)
            - file: path of a log file to append to
            - syslog: True, or {"address": "/dev/log", "facility": "daemon"}
            - loggers: per-logger level overrides, for example
              {"tierdns.matcher": "warn"} to silence skipped-record lines

    Calling it again replaces the handlers installed by the previous call.
    A syslog socket that cannot be opened is reported and otherwise ignored.

    Example config:
        logging:
          level: info
          file: ./var/tierdns.log
          loggers:
            tierdns.matcher: warn
    """
    cfg = cfg or {}

    root = logging.getLogger()
    root.setLevel(level_from_name(cfg.get("level", "info")))
    for existing in list(root.handlers):
        root.removeHandler(existing)

    for handler in _build_handlers(cfg):
        root.addHandler(handler)

    syslog_cfg = cfg.get("syslog")
    if syslog_cfg:
        try:
            root.addHandler(_syslog_handler(syslog_cfg))
        except (OSError, ValueError) as e:
            root.warning("Failed to configure syslog: %s", e)

    overrides = cfg.get("loggers") or {}
    for name, level in overrides.items():
        logging.getLogger(str(name)).setLevel(level_from_name(level))

    logging.captureWarnings(True)

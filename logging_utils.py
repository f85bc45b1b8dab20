#!/usr/bin/env python3
"""Shared logging helpers for tradesync.

Every component logs under the ``tradesync`` namespace (``tradesync.state_store``,
``tradesync.realtime_channel``...). Only the namespace root owns a handler, so an
embedding application can re-route or silence the engine through one logger.

Levels:
    TRADESYNC_LOG_LEVEL    level for the whole namespace (default INFO)
    TRADESYNC_LOG_LEVELS   per-component overrides, e.g.
                           "realtime_channel=DEBUG,state_store=WARNING"
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from env_utils import env_list, env_str

ROOT_LOGGER = "tradesync"

_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _parse_level(raw: Any, default: int) -> int:
    val = str(raw or "").strip().upper()
    if not val:
        return default
    if val.isdigit():
        return int(val)
    level = getattr(logging, val, None)
    return level if isinstance(level, int) else default


def _env_level(default: int) -> int:
    return _parse_level(env_str("TRADESYNC_LOG_LEVEL"), default)


def _component_levels() -> Dict[str, int]:
    levels: Dict[str, int] = {}
    for item in env_list("TRADESYNC_LOG_LEVELS", []):
        name, sep, raw = str(item).partition("=")
        if not sep or not name.strip():
            continue
        level = _parse_level(raw, -1)
        if level >= 0:
            levels[_qualified(name.strip())] = level
    return levels


def _qualified(name: str) -> str:
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return name
    return f"{ROOT_LOGGER}.{name}"


def _formatter() -> logging.Formatter:
    return logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT)


def _root(level: Optional[int] = None) -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        root.addHandler(handler)
        root.setLevel(_env_level(logging.INFO) if level is None else level)
    return root


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Component logger under the tradesync namespace.

    An explicit `level` wins over TRADESYNC_LOG_LEVELS; otherwise the
    component inherits the namespace level.
    """
    _root()
    qualified = _qualified(name)
    logger = logging.getLogger(qualified)
    if level is None:
        level = _component_levels().get(qualified)
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_logging(
    name: str = ROOT_LOGGER,
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Configure console (and optional file) output for `name` and everything below it."""
    logger = logging.getLogger(_qualified(name))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(_env_level(logging.DEBUG if verbose else logging.INFO) if level is None else level)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(_formatter())
    logger.addHandler(console_handler)

    for component, component_level in _component_levels().items():
        logging.getLogger(component).setLevel(component_level)
    return logger


def short_ref(value: Any, keep: int = 6) -> str:
    """Abbreviate tx hashes, signatures and addresses for log lines: 0x1234…abcd."""
    text = str(value or "")
    if len(text) <= 2 * keep + 1:
        return text
    return f"{text[:keep]}…{text[-4:]}"

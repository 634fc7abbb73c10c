from __future__ import annotations

import logging
import os
from typing import Optional


_TRUTHY = {"1", "true", "yes", "on"}

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def _parse_level(value, default_level: int) -> int:
    if value is None:
        return default_level
    if isinstance(value, int):
        return int(value)
    text = str(value).strip().upper()
    if not text:
        return default_level
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text)
    if isinstance(resolved, int):
        return resolved
    return default_level


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """
    Resolve log level from env (FPSOLVE_LOG_LEVEL or FPSOLVE_DEBUG).
    """
    default_level = _parse_level(default, logging.INFO)
    env_level = os.environ.get("FPSOLVE_LOG_LEVEL")
    if env_level:
        return _parse_level(env_level, default_level)
    if _is_truthy(os.environ.get("FPSOLVE_DEBUG")):
        return logging.DEBUG
    return default_level


def verbosity_to_level(verbosity: int) -> int:
    """Map solver verbosity (-1, 0, >=1) to the logging level it needs to be visible."""
    if verbosity < 0:
        return logging.WARNING
    if verbosity == 0:
        return logging.INFO
    return logging.DEBUG


def setup_logging(*, level: int | str | None = None) -> None:
    """
    Configure root logging once; later calls only adjust the level.
    """
    if level is None:
        level = get_log_level_from_env()
    level = _parse_level(level, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        handler.setLevel(level)

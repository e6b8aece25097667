"""
Apply the client's log flag to the package logger.

Single log level for every cloudplugs_mqtt module. CLOUDPLUGS_LOG_LEVEL env
takes precedence over the config flag; the flag maps on -> DEBUG, off -> WARNING.
The root logger and its handlers are left to the application.
"""

from __future__ import annotations

import logging
import os

PACKAGE_LOGGER = "cloudplugs_mqtt"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def level_from_flag_or_env(log_enabled: bool) -> int:
    """
    Resolve level: CLOUDPLUGS_LOG_LEVEL env if set, else DEBUG when log_enabled, else WARNING.
    """
    raw = os.environ.get("CLOUDPLUGS_LOG_LEVEL", "").strip()
    if raw:
        return _parse_level(raw)
    return logging.DEBUG if log_enabled else logging.WARNING


def apply_log_enabled(log_enabled: bool) -> int:
    """Set the package logger level from the log flag (or env). Returns the level applied."""
    level = level_from_flag_or_env(log_enabled)
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
    return level

# src/teliclens/core/config.py
"""Configuration helpers and feature flag evaluation."""

from __future__ import annotations

import os
from functools import lru_cache


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_key(name: str) -> str:
    return "TELICLENS_" + name.upper().replace(".", "_")


@lru_cache(maxsize=None)
def feature_enabled(name: str, default: bool = False) -> bool:
    """Return True when the named feature flag is enabled via environment variable.

    Feature names map to environment variables using the pattern:
        parse.strict → TELICLENS_PARSE_STRICT
    Values are interpreted case-insensitively; "1", "true", "yes", "on" enable the flag
    and "0", "false", "no", "off" disable it. Anything else keeps the default.
    """

    raw = os.getenv(_env_key(name))
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def env_int(name: str, default: int) -> int:
    """Read an integer knob (e.g. parse.max_workers → TELICLENS_PARSE_MAX_WORKERS)."""
    raw = os.getenv(_env_key(name))
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default

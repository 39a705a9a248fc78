"""
Common utilities shared across fpf modules.
"""

from __future__ import annotations

import os
import sys
from typing import Mapping

TRUTHY = frozenset({"1", "true", "yes", "on"})
FALSY = frozenset({"0", "false", "no", "off"})

# Characters that never need quoting inside a generated shell command
_SHELL_SAFE = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-./:,")


def env_str(name: str, environ: Mapping[str, str] | None = None) -> str:
    """Return the trimmed value of an environment variable ("" if unset)."""
    source = os.environ if environ is None else environ
    return (source.get(name) or "").strip()


def env_int(name: str, fallback: int, environ: Mapping[str, str] | None = None) -> int:
    """
    Parse an integer environment variable.

    Args:
        name: Variable name
        fallback: Value returned when unset or unparseable
        environ: Optional mapping to read from (defaults to os.environ)

    Returns:
        Parsed integer or fallback
    """
    raw = env_str(name, environ)
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        return fallback


def env_float(name: str, fallback: float, environ: Mapping[str, str] | None = None) -> float:
    """Parse a float environment variable, returning fallback when unset or invalid."""
    raw = env_str(name, environ)
    if not raw:
        return fallback
    try:
        return float(raw)
    except ValueError:
        return fallback


def env_flag(name: str, default: bool | None = False, environ: Mapping[str, str] | None = None) -> bool | None:
    """
    Parse a boolean switch.

    Recognizes 1/true/yes/on and 0/false/no/off (case-insensitive).
    Anything else yields the default, which may be None for tri-state switches.
    """
    raw = env_str(name, environ).lower()
    if raw in TRUTHY:
        return True
    if raw in FALSY:
        return False
    return default


def shell_quote(value: str) -> str:
    """Single-quote a value for POSIX shells."""
    if value == "":
        return "''"
    return "'" + value.replace("'", "'\\''") + "'"


def shell_quote_if_needed(value: str) -> str:
    """Quote only when the value contains characters outside a safe set."""
    if value == "":
        return "''"
    if all(ch in _SHELL_SAFE for ch in value):
        return value
    return shell_quote(value)


def vlog(msg: str, verbose: bool = False) -> None:
    """
    Log a debug message through the fpf logger.

    Emitted when verbose is set or FPF_DEBUG=1.

    Args:
        msg: Message to log
        verbose: Whether verbose mode is enabled
    """
    if verbose or env_str("FPF_DEBUG") == "1":
        from .logging_config import get_logger
        get_logger().debug(msg)


def stderr_is_terminal() -> bool:
    """Check whether stderr is attached to a terminal."""
    try:
        return sys.stderr.isatty()
    except (AttributeError, ValueError):
        return False

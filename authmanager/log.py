"""Logging utilities for authmanager.

Every module logs through a child of the ``authmanager`` logger, so the
``enable_logging`` and ``log_level`` settings apply package-wide.
"""

from __future__ import annotations

import logging
import sys

from typing import Any


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# Above CRITICAL, so every record is dropped while logging is disabled.
_SILENT = logging.CRITICAL + 10


class _LoggerHolder:
    """Holder for the package logger and its switches."""

    instance: logging.Logger | None = None
    level: int = logging.INFO
    enabled: bool = False


def get_logger() -> logging.Logger:
    """Return the ``authmanager`` package logger.

    The first call installs a stderr handler (unless the host application
    already attached one) and silences the logger until ``set_enabled``.
    """
    logger = _LoggerHolder.instance
    if logger is not None:
        return logger

    logger = logging.getLogger("authmanager")
    logger.setLevel(_SILENT)
    if not logger.handlers:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
        logger.addHandler(stream)
    _LoggerHolder.instance = logger
    return logger


def _apply() -> None:
    get_logger().setLevel(_LoggerHolder.level if _LoggerHolder.enabled else _SILENT)


def set_level(level: int | str) -> None:
    """Set the logging level.

    Parameters
    ----------
    level : int or str
        A ``logging`` level or one of ``"debug"``, ``"info"``, ``"warn"``,
        ``"error"`` (case-insensitive).
    """
    if isinstance(level, str):
        try:
            level = _LEVELS[level.lower()]
        except KeyError:
            msg = f"Unknown log level: {level}"
            raise ValueError(msg) from None
    _LoggerHolder.level = level
    _apply()


def set_enabled(enabled: bool) -> None:
    """Turn package logging on or off without losing the configured level."""
    _LoggerHolder.enabled = enabled
    _apply()


def is_enabled() -> bool:
    """Return True if package logging is currently enabled."""
    return _LoggerHolder.enabled


def configure_logging(enabled: bool | None = None, level: str | None = None) -> None:
    """Apply ``enable_logging`` / ``log_level`` settings.

    ``None`` leaves the corresponding switch untouched.
    """
    if level is not None:
        set_level(level)
    if enabled is not None:
        set_enabled(enabled)


# Key fragments whose values never reach a log record.
_SENSITIVE_FRAGMENTS = (
    "secret",
    "password",
    "token",
    "code",
    "credential",
    "nonce",
    "state",
    "verifier",
    "authorization",
)

_REDACTED = "[REDACTED]"


def _is_sensitive(key: Any) -> bool:
    name = str(key).lower()
    return any(fragment in name for fragment in _SENSITIVE_FRAGMENTS)


def redact_sensitive_data(data: Any, max_depth: int = 5) -> Any:
    """Return a copy of ``data`` that is safe to log.

    Values stored under keys such as ``client_secret``, ``access_token``,
    ``code`` or ``state`` are masked at any nesting level. ``data`` itself
    is never modified.

    Parameters
    ----------
    data : Any
        Token response, request payload or any JSON-like value.
    max_depth : int, optional
        Nesting levels to descend before giving up (default: 5).

    Returns
    -------
    Any
        The masked copy. Scalars are returned as they are.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"
    if isinstance(data, dict):
        return {
            key: _REDACTED if _is_sensitive(key) else redact_sensitive_data(value, max_depth - 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]
    return data

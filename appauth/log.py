"""Logging utilities for appauth.

The package logs under the ``appauth`` logger hierarchy. Modules grab
child loggers (``appauth.auth``, ``appauth.service``) with
``logging.getLogger``; this module configures the parent once.
"""

from __future__ import annotations

import logging
import sys

from typing import Any


_DEFAULT_FORMAT = "%(name)s - %(levelname)s - %(message)s"


class _LoggerHolder:
    """Holder for the package logger instance."""

    instance: logging.Logger | None = None


def get_logger() -> logging.Logger:
    """Get the appauth logger instance.

    Returns
    -------
    logging.Logger
        The appauth logger configured with a stream handler.
    """
    if _LoggerHolder.instance is None:
        logger = logging.getLogger("appauth")
        logger.setLevel(logging.WARNING)

        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.DEBUG)
            handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
            logger.addHandler(handler)

        _LoggerHolder.instance = logger

    return _LoggerHolder.instance


def configure(level: int | str = "WARNING", fmt: str | None = None) -> logging.Logger:
    """Apply log settings to the package logger.

    Parameters
    ----------
    level : int or str
        The logging level.
    fmt : str, optional
        Format string for the package handler.

    Returns
    -------
    logging.Logger
        The configured package logger.
    """
    logger = get_logger()
    set_level(level)
    if fmt:
        for handler in logger.handlers:
            handler.setFormatter(logging.Formatter(fmt))
    return logger


def set_level(level: int | str) -> None:
    """Set the logging level.

    Parameters
    ----------
    level : int or str
        The logging level (e.g., logging.DEBUG, "DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


def enable_debug() -> None:
    """Enable verbose logging of login flows, refreshes and storage access."""
    set_level(logging.DEBUG)


def log_callback_error(callback: str, exc: BaseException) -> None:
    """Log a failing application callback with a standard format.

    Parameters
    ----------
    callback : str
        Name of the callback that raised.
    exc : BaseException
        The exception that was raised.
    """
    get_logger().exception(f"Callback error in '{callback}': {exc}")


# Keys that should be redacted in log output
_SENSITIVE_KEYS = frozenset(
    {
        "secret",
        "password",
        "token",
        "code",
        "credential",
        "verifier",
    }
)


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Redact sensitive values from data for safe logging.

    Recursively traverses dicts/lists and replaces values for keys
    that match sensitive patterns with "[REDACTED]".

    Parameters
    ----------
    data : dict or list or str or None
        The data to redact.
    max_depth : int, optional
        Maximum recursion depth (default: 5).

    Returns
    -------
    dict or list or str or None
        A copy of the data with sensitive values redacted.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"

    if data is None:
        return None

    if isinstance(data, dict):
        result: dict[str, Any] = {}
        for k, v in data.items():
            key_lower = k.lower() if isinstance(k, str) else str(k).lower()
            if any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS):
                result[k] = "[REDACTED]"
            else:
                result[k] = redact_sensitive_data(v, max_depth - 1)
        return result

    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]

    return data

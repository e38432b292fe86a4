"""
Console logging for cqpolicy commands.

The CLI calls setup_logging once per invocation. Environment variables give
the defaults, an explicit level (from --verbose/--quiet) wins:
- CQPOLICY_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
- CQPOLICY_LOG_FORMAT: text|json (default: text)
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from pythonjsonlogger import jsonlogger

# Marks the handler installed here so repeated calls can replace it
_HANDLER_NAME = "cqpolicy-console"


def _get_level() -> int:
    level = os.getenv("CQPOLICY_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level, logging.INFO)


def _make_formatter() -> logging.Formatter:
    if os.getenv("CQPOLICY_LOG_FORMAT", "text").lower() == "json":
        return jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
        )
    return logging.Formatter(
        fmt="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


def setup_logging(force: bool = False, *, level: Optional[int] = None, logger: Optional[logging.Logger] = None) -> None:
    """Configure console logging on the root logger (or the given one).

    Calling it again replaces the handler it installed earlier, picking up
    the new level and format. Handlers installed by someone else are left alone
    unless force is set, but the level is still applied.
    """
    target_logger = logger or logging.getLogger()
    target_logger.setLevel(level if level is not None else _get_level())

    if force:
        for h in list(target_logger.handlers):
            target_logger.removeHandler(h)

    # Replace our previous handler; stderr may have been swapped since
    for h in [h for h in target_logger.handlers if h.get_name() == _HANDLER_NAME]:
        target_logger.removeHandler(h)
    if target_logger.handlers:
        return

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(_make_formatter())
    target_logger.addHandler(handler)

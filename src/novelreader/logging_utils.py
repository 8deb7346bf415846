from __future__ import annotations

import sys
from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

_DEBUG_LOG = False


def set_debug_logging(enabled: bool) -> None:
    global _DEBUG_LOG
    _DEBUG_LOG = enabled


def debug_enabled() -> bool:
    return _DEBUG_LOG


def debug_log(message: str) -> None:
    if _DEBUG_LOG:
        print(f"[novelreader debug] {message}", file=sys.stderr)


def warn(message: str) -> None:
    print(f"[novelreader] {message}", file=sys.stderr)


class BookIdAccessFormatter(UvicornAccessFormatter):
    """Access log formatter that shows percent-encoded book ids as text."""

    def formatMessage(self, record):  # type: ignore[override]
        args = record.args
        if isinstance(args, tuple) and len(args) == 5 and isinstance(args[2], str) and "%" in args[2]:
            record = copy(record)
            record.args = args[:2] + (unquote(args[2], errors="replace"),) + args[3:]
        return super().formatMessage(record)


def build_uvicorn_log_config() -> dict[str, Any]:
    """uvicorn logging config for the sync service; follows the debug switch."""
    config = deepcopy(LOGGING_CONFIG)
    config["formatters"]["access"]["()"] = "novelreader.logging_utils.BookIdAccessFormatter"
    level = "DEBUG" if debug_enabled() else "INFO"
    for logger in config["loggers"].values():
        if "level" in logger:
            logger["level"] = level
    return config


__all__ = [
    "set_debug_logging",
    "debug_enabled",
    "debug_log",
    "warn",
    "BookIdAccessFormatter",
    "build_uvicorn_log_config",
]

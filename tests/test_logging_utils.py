from __future__ import annotations

import logging

from novelreader.logging_utils import (
    BookIdAccessFormatter,
    build_uvicorn_log_config,
    debug_log,
    set_debug_logging,
    warn,
)


def test_access_log_shows_decoded_book_ids() -> None:
    formatter = BookIdAccessFormatter('%(request_line)s %(status_code)s', use_colors=False)
    record = logging.LogRecord(
        name="uvicorn.access",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg='%s - "%s %s HTTP/%s" %d',
        args=("127.0.0.1:5000", "GET", "/sync/%E5%B0%8F%E8%AA%AC.txt", "1.1", 200),
        exc_info=None,
    )
    assert "/sync/小説.txt" in formatter.format(record)


def test_log_config_points_at_book_id_formatter() -> None:
    set_debug_logging(False)
    config = build_uvicorn_log_config()
    assert config["formatters"]["access"]["()"] == "novelreader.logging_utils.BookIdAccessFormatter"
    assert config["loggers"]["uvicorn.access"]["level"] == "INFO"


def test_log_config_follows_debug_switch() -> None:
    set_debug_logging(True)
    try:
        config = build_uvicorn_log_config()
    finally:
        set_debug_logging(False)
    assert {logger["level"] for logger in config["loggers"].values()} == {"DEBUG"}


def test_debug_log_respects_switch(capsys) -> None:
    set_debug_logging(False)
    debug_log("hidden")
    set_debug_logging(True)
    try:
        debug_log("shown")
    finally:
        set_debug_logging(False)
    warn("careful")
    err = capsys.readouterr().err
    assert "hidden" not in err
    assert "[novelreader debug] shown" in err
    assert "[novelreader] careful" in err

"""Logging setup for the command line entry point."""

from __future__ import annotations

import logging
import sys
from typing import Literal

from pythonjsonlogger.json import JsonFormatter

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Libraries that log every statement or event-loop detail at INFO/DEBUG.
NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


class HuntJsonFormatter(JsonFormatter):
    """JSON lines with ``timestamp``/``level`` keys and source location."""

    def add_fields(self, log_record, record, message_dict):  # type: ignore[no-untyped-def]
        super().add_fields(log_record, record, message_dict)
        log_record["source"] = f"{record.filename}:{record.lineno}"


def configure_logging(
    level: int | str = logging.INFO,
    fmt: Literal["text", "json"] = "text",
) -> logging.Logger:
    """Configure the root logger to write to stderr.

    Stdout is left to command output (JSON documents), so logs never mix
    with results.

    Args:
        level: Root log level.
        fmt: ``text`` for humans, ``json`` for log shippers.

    Returns:
        The configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(
            HuntJsonFormatter(
                JSON_FORMAT,
                rename_fields={"asctime": "timestamp", "levelname": "level"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root_logger

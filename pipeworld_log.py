"""
Logging configuration for the pipeworld modules.

Every module logs under the ``pipeworld`` namespace (``pipeworld``,
``pipeworld.view``, ``pipeworld.bench``), so configuring that one logger
covers them all.
"""

from __future__ import annotations

import logging
import sys

LOGGER_NAME = "pipeworld"


def setup_logging(
    level: int = logging.INFO,
    log_file: str | None = None,
    console: bool = True,
) -> logging.Logger:
    """
    Configure the ``pipeworld`` logger.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO).
        log_file: Optional path to also write logs to.
        console: Attach a stderr handler. The curses view turns this off so
            log lines do not land on top of the picture.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Avoid duplicate handlers when called again (e.g. from tests)
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    logger.debug("Logging initialized.")
    return logger


def parse_level(name: str) -> int:
    """'debug' / 'INFO' / '20' -> logging level int."""
    if name.isdigit():
        return int(name)
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level: {name!r}")
    return level

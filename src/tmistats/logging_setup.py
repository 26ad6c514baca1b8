#!/usr/bin/env python3
"""
Centralized logging configuration for tmi-stats.

Poll loops run for hours unattended, so everything goes through `logging`
and the console handler marks warnings and errors with a short prefix for
visual scanning.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s"
LOG_FORMAT_SIMPLE = "%(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class LevelPrefixFormatter(logging.Formatter):
    """Formatter that prefixes warnings and errors with a level marker."""

    LEVEL_PREFIXES = {
        logging.DEBUG: "",
        logging.INFO: "",
        logging.WARNING: "WARN: ",
        logging.ERROR: "ERROR: ",
        logging.CRITICAL: "FATAL: ",
    }

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        # The full format already carries the level name
        prefix = self.LEVEL_PREFIXES.get(record.levelno, "")
        if prefix and self._fmt == LOG_FORMAT_SIMPLE:
            return f"{prefix}{formatted}"
        return formatted


def setup_logging(
    verbose: bool = False,
    console_output: bool = True,
    log_file: str | None = None,
    simple_format: bool = False,
) -> None:
    """
    Configure logging for tmi-stats.

    Args:
        verbose: Enable DEBUG level logging (default: INFO)
        console_output: Output to stderr (default: True)
        log_file: Optional file path for log output
        simple_format: Use simplified format without timestamps (for interactive commands)
    """
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers
    root_logger.handlers.clear()

    fmt = LOG_FORMAT_SIMPLE if simple_format else LOG_FORMAT

    # stdout is reserved for command output (JSON dumps, rows)
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(LevelPrefixFormatter(fmt, datefmt=DATE_FORMAT))
        root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    # aiohttp is chatty at DEBUG
    logging.getLogger("aiohttp").setLevel(max(level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Usage:
        from .logging_setup import get_logger
        logger = get_logger(__name__)
        logger.info("Polling gateway at %s", host)
    """
    return logging.getLogger(name)

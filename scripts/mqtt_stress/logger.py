"""Coloured logging configuration for the MQTT stress-test orchestrator.

This module provides the coloured console formatter used on the instance's
serial console and a factory that builds the per-run logger, optionally
mirrored to a plain-text startup log file.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


class LogMessageFilter(logging.Filter):
    """A logging filter to remove problematic control characters from log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter log records, removing only problematic control characters.

        Returns:
            True if the log record should be processed, False otherwise.
        """
        if isinstance(record.msg, str):
            # emqtt-bench progress output can carry terminal escapes
            record.msg = CONTROL_CHARS.sub("", record.msg)
        if record.exc_text:
            record.exc_text = CONTROL_CHARS.sub("", record.exc_text)
        return True


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colour codes to different log levels."""

    # ANSI colour codes
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[90m",  # Grey
        "INFO": "\033[92m",  # Green
        "WARNING": "\033[93m",  # Yellow
        "ERROR": "\033[91m",  # Red
        "CRITICAL": "\033[95m",  # Magenta
    }
    RESET: ClassVar[str] = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with appropriate colours.

        Returns:
            The formatted log record with appropriate colours.
        """
        colour = self.COLORS.get(record.levelname, "")
        formatted = super().format(record)
        if colour:
            formatted = f"{colour}{formatted}{self.RESET}"
        return formatted


def create_run_logger(
    log_file: Path | None = None, *, verbose: bool = False, name: str = "mqtt_stress.run"
) -> logging.Logger:
    """Build the logger for a single orchestrator run.

    The console handler is coloured; the optional file handler writes the same
    records uncoloured so the startup log stays greppable. Handlers from a
    previous call with the same name are replaced.

    Args:
        log_file: Startup log to mirror console output into.
        verbose: Emit DEBUG records to the console as well.
        name: Logger name, mostly useful for tests.

    Returns:
        The configured logger.
    """
    run_logger = logging.getLogger(name)
    run_logger.setLevel(logging.DEBUG)
    for handler in list(run_logger.handlers):
        run_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    console_handler.addFilter(LogMessageFilter())
    run_logger.addHandler(console_handler)

    if log_file is not None:
        attach_file_handler(run_logger, log_file)

    # Prevent duplicate logs from root logger
    run_logger.propagate = False
    return run_logger


def attach_file_handler(target: logging.Logger, log_file: Path) -> None:
    """Mirror ``target`` into ``log_file``; an unwritable file only costs a warning."""
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        target.warning("⚠️ Cannot write startup log %s: %s", log_file, e)
        return
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.addFilter(LogMessageFilter())
    target.addHandler(file_handler)


# Package-wide default logger, used by components that are not handed one
logger = create_run_logger(name="mqtt_stress")

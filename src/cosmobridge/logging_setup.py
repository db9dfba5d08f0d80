#!/usr/bin/env python3
"""
Logging configuration for the Cosmo bridge.

Console output carries a level marker on warnings and errors; the optional
debug log file always gets the full timestamped format at DEBUG level.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s"
LOG_FORMAT_SIMPLE = "%(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that flood DEBUG output with per-frame chatter
QUIET_LOGGERS = ("dbus_next", "websockets", "uvicorn.error")

# Messages that already open with one of these are left alone
MARKED_PREFIXES = ("⚠️", "❌", "💥", "📡", "🔍", "🔄", "✅")


class EmojiFormatter(logging.Formatter):
    """Prefixes warnings and errors with a marker unless the message has one."""

    LEVEL_MARKERS = {
        logging.WARNING: "⚠️ ",
        logging.ERROR: "❌ ",
        logging.CRITICAL: "💥 ",
    }

    def formatMessage(self, record: logging.LogRecord) -> str:
        marker = self.LEVEL_MARKERS.get(record.levelno, "")
        if marker and not record.message.lstrip().startswith(MARKED_PREFIXES):
            record = logging.makeLogRecord(record.__dict__)
            record.message = marker + record.message
        return super().formatMessage(record)


def _console_handler(level: int, simple_format: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    fmt = LOG_FORMAT_SIMPLE if simple_format else LOG_FORMAT
    handler.setFormatter(EmojiFormatter(fmt, datefmt=DATE_FORMAT))
    return handler


def _file_handler(path: str) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    verbose: bool = False,
    console_output: bool = True,
    log_file: str | None = None,
    simple_format: bool = False,
) -> None:
    """
    Configure the root logger.

    Safe to call again once the config file is loaded; existing handlers
    are replaced.

    Args:
        verbose: DEBUG on the console instead of INFO
        console_output: Log to stdout
        log_file: Debug log path; always receives DEBUG records
        simple_format: Message only on the console (no timestamp, level, logger)
    """
    console_level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG if (verbose or log_file) else logging.INFO)

    if console_output:
        root_logger.addHandler(_console_handler(console_level, simple_format))
    if log_file:
        root_logger.addHandler(_file_handler(log_file))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def has_console() -> bool:
    """True when stdout is a terminal (not journald or a pipe)."""
    return sys.stdout.isatty()

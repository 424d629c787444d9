"""
Logging module for the conversation migration tool
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

from dialog_migrator.constants import LOGGER_NAME

# Attributes every LogRecord carries; anything else came in through ``extra``.
_STANDARD_RECORD_ATTRS = frozenset(
    (
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "id",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    )
)


class JsonFormatter(logging.Formatter):
    def format(self, record):
        data = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        # Include context passed through log_with_context
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_ATTRS:
                data[key] = value
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class EnhancedFormatter(logging.Formatter):
    """
    Formatter that adds the conversation context to each line and switches to a
    detailed layout in verbose mode.
    """

    def __init__(self, fmt=None, datefmt=None, style="%", verbose=False):
        if verbose:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s"
        elif not fmt:
            fmt = "%(asctime)s - %(levelname)s - %(message)s"

        super().__init__(fmt, datefmt, style)
        self.verbose = verbose

    def format(self, record):
        result = super().format(record)

        dialog = getattr(record, "dialog", None)
        if dialog:
            result = f"{result} [dialog={dialog}]"

        if self.verbose:
            operation = getattr(record, "operation", None)
            if operation:
                result = f"{result} [op={operation}]"

        return result


class DialogFilter(logging.Filter):
    """Pass only records tagged with one conversation id."""

    def __init__(self, dialog_id: str) -> None:
        super().__init__()
        self.dialog_id = dialog_id

    def filter(self, record):
        return getattr(record, "dialog", None) == self.dialog_id


def setup_logger(
    verbose: bool = False,
    quiet: bool = False,
    log_file: Optional[str] = None,
    json_format: bool = False,
) -> logging.Logger:
    """
    Set up and return the logger with appropriate formatting.

    Args:
        verbose: If True, set console handler to DEBUG level
        quiet: If True, only warnings and errors reach the console
        log_file: Optional path of a log file receiving every record
        json_format: Write the log file as one JSON object per line

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)

    # Clear any existing handlers to prevent duplicate messages
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)

    if quiet:
        console_level = logging.WARNING
    elif verbose:
        console_level = logging.DEBUG
    else:
        console_level = logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(EnhancedFormatter(verbose=verbose))
    logger.addHandler(console_handler)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        if json_format:
            file_handler.setFormatter(JsonFormatter())
        else:
            file_handler.setFormatter(EnhancedFormatter(verbose=True))
        logger.addHandler(file_handler)
        logger.debug(f"Log file: {log_file}")

    return logger


def setup_dialog_log(log_dir: str, dialog_id: str) -> logging.FileHandler:
    """
    Attach a file handler that collects only the records of one conversation.

    Args:
        log_dir: Directory receiving the per-conversation log files
        dialog_id: The conversation id records are tagged with

    Returns:
        The file handler, so the caller can detach it when done
    """
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"dialog_{dialog_id}.log")

    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(EnhancedFormatter())
    file_handler.addFilter(DialogFilter(dialog_id))

    logging.getLogger(LOGGER_NAME).addHandler(file_handler)
    return file_handler


def remove_handler(handler: logging.Handler) -> None:
    """Detach and close a handler created by this module."""
    logging.getLogger(LOGGER_NAME).removeHandler(handler)
    handler.close()


def log_with_context(level: int, message: str, **kwargs: Any) -> None:
    """
    Log a message with additional context information.

    Args:
        level: The logging level (e.g., logging.INFO)
        message: The log message
        **kwargs: Additional context to include in the log record
    """
    exc_info = kwargs.pop("exc_info", None)

    # Filter out None values from kwargs
    extras = {k: v for k, v in kwargs.items() if v is not None}

    logger = logging.getLogger(LOGGER_NAME)
    logger.log(level, message, extra=extras, exc_info=exc_info)


def get_logger() -> logging.Logger:
    """Get the dialog_migrator logger, creating it with defaults if needed."""
    migrator_logger = logging.getLogger(LOGGER_NAME)
    if not migrator_logger.handlers:
        migrator_logger.setLevel(logging.INFO)
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(EnhancedFormatter())
        migrator_logger.addHandler(handler)
    return migrator_logger

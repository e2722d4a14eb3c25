"""
Logging setup shared by every rebalancer module.

One named logger with a console handler and a size-rotated file handler.
Cycle workers, receipt watchers and chain listeners all log from their own
threads, so the thread name is part of every line.
"""

import logging
import os
import threading
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOGS_PATH = os.environ.get("LOGS_PATH", "logs/rebalancer.log")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG").upper()

LOGGER_NAME = "yield_rebalancer"
LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(threadName)s] %(message)s"

MAX_LOG_BYTES = 50 * 1024 * 1024
LOG_BACKUPS = 5


class DetailedExceptionFormatter(logging.Formatter):
    """Tracebacks are kept for ERROR and above; lower levels stay on one line."""

    def __init__(self) -> None:
        super().__init__(LOG_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if record.exc_info and record.levelno < logging.ERROR:
            record = logging.makeLogRecord({**record.__dict__, "exc_info": None, "exc_text": None})
        return super().format(record)


def setup_logger() -> logging.Logger:
    """
    Set up and configure the rebalancer logger.

    Safe to call from every module; handlers are attached only once.

    Returns:
        Configured logger instance with console and file handlers.
    """
    logger = logging.getLogger(LOGGER_NAME)

    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.DEBUG))

    console_handler = logging.StreamHandler()
    Path(LOGS_PATH).parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(LOGS_PATH, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)

    formatter = DetailedExceptionFormatter()
    console_handler.setFormatter(formatter)
    file_handler.setFormatter(formatter)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger


def global_exception_handler(exctype: type, value: BaseException, tb: Any) -> None:
    """
    sys.excepthook replacement that logs uncaught exceptions.

    Args:
        exctype: The type of the exception.
        value: The exception instance.
        tb: A traceback object encapsulating the call stack.
    """
    logger = logging.getLogger(LOGGER_NAME)
    trace_str = "".join(traceback.format_exception(exctype, value, tb))
    logger.critical("Uncaught exception:\n %s", trace_str)


def thread_exception_handler(args: threading.ExceptHookArgs) -> None:
    """threading.excepthook replacement, so a dying worker thread is logged too."""
    thread_name = args.thread.name if args.thread is not None else "unknown"
    logger = logging.getLogger(LOGGER_NAME)
    trace_str = "".join(traceback.format_exception(args.exc_type, args.exc_value, args.exc_traceback))
    logger.critical("Uncaught exception in thread %s:\n %s", thread_name, trace_str)

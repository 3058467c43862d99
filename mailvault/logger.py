#!/usr/bin/env python3
"""
logger.py: centralized logging for mailvault

Every record passes two filters before it is written:
- OperationFilter stamps the running operation and its log id, so lines
  from worker threads can be traced back to a sync_logs row.
- SecretFilter masks bearer tokens and OAuth secrets that may show up
  in error bodies echoed from the token endpoint.
"""

import logging
import re
import sys
import threading
from contextlib import contextmanager
from logging.handlers import TimedRotatingFileHandler, RotatingFileHandler
from typing import Iterator, Optional

from mailvault.config import Settings

_LOGGER: Optional[logging.Logger] = None
STATUS_LEVEL = 25

FILE_FORMAT = "%(asctime)s [%(levelname)s] [%(threadName)s] [%(operation)s] %(message)s"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] [%(operation)s] %(message)s"

_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"""(["']?(?:access_token|refresh_token|id_token|client_secret)["']?\s*[:=]\s*["']?)[^"'&\s,}]+"""),
    re.compile(r"(\bcode=)[^&\s]+"),
)
REDACTED = "***"

_operation_lock = threading.Lock()
_operation = "-"


class OperationFilter(logging.Filter):
    """Adds %(operation)s to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.operation = _operation
        return True


class SecretFilter(logging.Filter):

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


@contextmanager
def operation_context(name: str, log_id: Optional[int] = None) -> Iterator[None]:
    """Tag log lines with the operation for the duration of the block."""
    global _operation
    label = f"{name}#{log_id}" if log_id is not None else name
    with _operation_lock:
        previous, _operation = _operation, label
    try:
        yield
    finally:
        with _operation_lock:
            _operation = previous


def _register_status_level() -> None:
    logging.addLevelName(STATUS_LEVEL, "STATUS")

    def status(self, message, *args, **kwargs):
        if self.isEnabledFor(STATUS_LEVEL):
            self._log(STATUS_LEVEL, message, args, **kwargs)

    logging.Logger.status = status  # type: ignore[attr-defined]


def _file_handler(settings: Settings) -> logging.Handler:
    settings.log_path.parent.mkdir(parents=True, exist_ok=True)
    if settings.rotate_by_time:
        return TimedRotatingFileHandler(
            settings.log_path, when="midnight", interval=1, backupCount=settings.max_log_files, encoding="utf-8"
        )
    return RotatingFileHandler(
        settings.log_path, maxBytes=settings.max_log_size, backupCount=settings.max_log_files, encoding="utf-8"
    )


def _attach(log: logging.Logger, handler: logging.Handler, level: int, fmt: str) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    # On the handler so records from child loggers are filtered too
    handler.addFilter(OperationFilter())
    handler.addFilter(SecretFilter())
    log.addHandler(handler)


def setup_logger(settings: Settings) -> logging.Logger:
    """Initialize the mailvault logger once: rotating file plus console."""
    global _LOGGER
    if _LOGGER is not None:
        return _LOGGER

    _register_status_level()

    log = logging.getLogger("mailvault")
    log.setLevel(settings.log_level)
    log.propagate = False

    for h in log.handlers[:]:
        log.removeHandler(h)

    _attach(log, _file_handler(settings), logging.DEBUG, FILE_FORMAT)
    _attach(log, logging.StreamHandler(sys.stdout), logging.INFO, CONSOLE_FORMAT)

    _LOGGER = log
    return log


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Child of the mailvault logger. Before setup_logger() runs, a temporary
    stderr logger is returned; it applies the same filters.
    """
    if _LOGGER is not None:
        return _LOGGER.getChild(name) if name else _LOGGER

    temp = logging.getLogger("mailvault.temp")
    if not temp.handlers:
        _attach(temp, logging.StreamHandler(sys.stderr), logging.NOTSET, CONSOLE_FORMAT)
        temp.setLevel(logging.INFO)
    return temp.getChild(name) if name else temp

# src/entity_repository/core/logging/builder.py
"""
Logging builder: create and apply a dictConfig logging configuration and optionally
wire a background QueueListener to decouple log IO from the event loop.

This module:
 - builds a dictConfig-compatible mapping from Settings
 - allows a queue-backed logging mode (LOG_USE_QUEUE) so handlers write from a
   background thread while producers only enqueue records
 - provides NonBlockingQueueHandler, which drops records (and counts the drops)
   instead of blocking when a bounded queue is full
 - stamps producer-side filters (CorrelationIdFilter, RedactFilter) on the
   QueueHandler so contextvars are read in the producing context
 - exposes stop_queue_logging() to flush and stop the listener at shutdown.

Configuration knobs (on Settings):
 - LOG_USE_QUEUE, LOG_QUEUE_MAX_SIZE (0 = unbounded), LOG_QUEUE_BLOCKING
 - LOG_TO_STDOUT, LOG_DIR, LOG_FORMAT, LOG_LEVEL, ENABLE_SQL_LOGGING, ENV
"""

from __future__ import annotations

import logging
import logging.config
import queue as _queue
import threading
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from typing import Optional

from entity_repository.config.settings import Settings

from .filters import CorrelationIdFilter, RedactFilter
from .formatters import DISTRIBUTION_NAME, ColorFormatter, JsonFormatter
from .handlers import (
    get_console_handler,
    get_error_console_handler,
    get_error_file_handler,
    get_file_handler,
)

# Running QueueListener and its queue, so they can be stopped
_QUEUE_LISTENER: Optional[QueueListener] = None
_QUEUE: Optional[_queue.Queue] = None

# Diagnostics for dropped logs (bounded, non-blocking queue)
_DROPPED_LOGS_COUNT = 0
_DROPPED_LOGS_LOCK = threading.Lock()


class NonBlockingQueueHandler(QueueHandler):
    """
    QueueHandler variant that never blocks producers on a full bounded queue.
    A full queue increments the module drop counter and reports through
    `handleError(record)`.
    """

    def emit(self, record: logging.LogRecord) -> None:
        global _DROPPED_LOGS_COUNT
        try:
            self.queue.put_nowait(self.prepare(record))
        except _queue.Full:
            with _DROPPED_LOGS_LOCK:
                _DROPPED_LOGS_COUNT += 1
            self.handleError(record)


def get_queue_stats() -> dict:
    """Return small diagnostics about queue usage (dropped logs count)."""
    with _DROPPED_LOGS_LOCK:
        return {"dropped_logs": _DROPPED_LOGS_COUNT, "queue_present": _QUEUE is not None}


def make_dict_config(settings: Settings) -> dict:
    """
    Build the dictConfig mapping using the provided settings.

    The returned mapping includes:
      - formatters: "standard" (color or plain text) and "json"
      - filters: "correlation_id", "redact"
      - handlers: console, (file/error_file) OR error_console depending on LOG_TO_STDOUT
      - loggers: root, entity_repository, sqlalchemy.engine
    """
    formatters = {
        "standard": {
            "()": ColorFormatter if settings.LOG_FORMAT == "text" else logging.Formatter,
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(correlation_id)s | %(message)s",
        },
        "json": {
            "()": JsonFormatter,
            "env": settings.ENV,
            "service": DISTRIBUTION_NAME,
        },
    }

    filters = {
        "correlation_id": {"()": CorrelationIdFilter},
        "redact": {"()": RedactFilter},
    }

    handlers: dict[str, dict] = {"console": get_console_handler(settings)}

    if (not settings.LOG_TO_STDOUT) and settings.LOG_DIR:
        handlers["file"] = get_file_handler(settings)
        handlers["error_file"] = get_error_file_handler(settings)
    else:
        handlers["error_console"] = get_error_console_handler(settings)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": filters,
        "handlers": handlers,
        "loggers": {
            "": {
                "handlers": list(handlers.keys()),
                "level": settings.LOG_LEVEL,
                "propagate": True,
            },
            "entity_repository": {
                "level": settings.LOG_LEVEL,
                "propagate": True,
            },
            # SQL logging may contain bound parameter values
            "sqlalchemy.engine": {
                "level": "DEBUG" if settings.ENABLE_SQL_LOGGING else "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }


def setup_logging(settings: Settings) -> None:
    """
    Initialize logging using settings and optionally switch to queue-backed logging.

    Steps:
      1. Ensure LOG_DIR exists when writing files.
      2. Apply dictConfig(make_dict_config(settings)).
      3. Register a CorrelationIdFilter on the root logger as a safety net.
      4. If settings.LOG_USE_QUEUE:
            - create a (bounded or unbounded) queue
            - detach the real handlers from every logger
            - run them in a QueueListener thread
            - attach a QueueHandler (or NonBlockingQueueHandler) with the
              producer-side filters to the root logger
    """
    global _QUEUE_LISTENER, _QUEUE

    if (not settings.LOG_TO_STDOUT) and settings.LOG_DIR:
        Path(settings.LOG_DIR).mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(make_dict_config(settings))
    logging.getLogger().addFilter(CorrelationIdFilter())

    if not getattr(settings, "LOG_USE_QUEUE", False):
        return

    max_size = getattr(settings, "LOG_QUEUE_MAX_SIZE", 0) or 0
    blocking = bool(getattr(settings, "LOG_QUEUE_BLOCKING", False))

    root_logger = logging.getLogger()
    current_handlers = list(root_logger.handlers)
    if not current_handlers:
        return

    handlers_to_move = set(current_handlers)
    for logger_obj in list(logging.Logger.manager.loggerDict.values()):
        if isinstance(logger_obj, logging.Logger):
            for h in list(logger_obj.handlers):
                if h in handlers_to_move:
                    logger_obj.removeHandler(h)
    for h in list(root_logger.handlers):
        if h in handlers_to_move:
            root_logger.removeHandler(h)

    log_queue: _queue.Queue = _queue.Queue(max_size) if max_size > 0 else _queue.Queue()

    if max_size > 0 and not blocking:
        queue_handler_cls = NonBlockingQueueHandler
    else:
        queue_handler_cls = QueueHandler

    listener = QueueListener(log_queue, *current_handlers, respect_handler_level=True)
    listener.start()

    qh = queue_handler_cls(log_queue)
    # run in the producer context, where the correlation id contextvar is set
    qh.addFilter(CorrelationIdFilter())
    qh.addFilter(RedactFilter())
    root_logger.addHandler(qh)

    _QUEUE_LISTENER = listener
    _QUEUE = log_queue


def stop_queue_logging() -> None:
    """
    Stop the QueueListener (flushing queued records) and clear module refs.
    No-op when queue logging is not running.
    """
    global _QUEUE_LISTENER, _QUEUE
    listener = _QUEUE_LISTENER
    if listener is None:
        return

    try:
        listener.stop()
    finally:
        _QUEUE_LISTENER = None
        _QUEUE = None

# src/entity_repository/core/logging/formatters.py

"""
Custom logging formatters.

  - JsonFormatter: structured JSON lines for log collectors. Extras passed via
    `logger.debug("repo.create.start", extra={...})` become top-level keys.
  - ColorFormatter: compact ANSI-colored lines for local consoles.

The builder (dictConfig) selects one of them from `Settings.LOG_FORMAT`.
"""

import json
import logging
from importlib import metadata as importlib_metadata
from logging import LogRecord
from typing import Any

DISTRIBUTION_NAME = "entity-repository"


def get_project_version(default: str = "0.0.0") -> str:
    """Version of the installed distribution (`default` when running from a checkout)."""
    try:
        return importlib_metadata.version(DISTRIBUTION_NAME)
    except importlib_metadata.PackageNotFoundError:
        return default


PROJECT_VERSION = get_project_version()

# Attributes every LogRecord carries; anything else on the record is an extra.
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """
    Structured JSON formatter.

    Responsibilities:
      - Build a JSON object with the standard fields (timestamp, level, logger,
        message, pathname, lineno) plus service, env, version and correlation_id.
      - Include exception and stack information if present.
      - Include any `extra` keys, converting non-serializable values to strings.

    The formatter never raises: `json.dumps(..., default=str)` is the final fallback.
    """

    def __init__(self, *, env: str | None = None, service: str = DISTRIBUTION_NAME, datefmt: str | None = None):
        super().__init__(datefmt=datefmt)
        self.env = env
        self.service = service

    def format(self, record: LogRecord) -> str:
        log_record: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "pathname": record.pathname,
            "lineno": record.lineno,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "service": self.service,
            "env": self.env,
            "version": PROJECT_VERSION,
        }

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_record["stack_info"] = self.formatStack(record.stack_info)

        extras = {
            k: v
            for k, v in record.__dict__.items()
            if k not in log_record and k not in _RESERVED_ATTRS and not k.startswith("_")
        }
        for k, v in extras.items():
            try:
                json.dumps(v)
                log_record[k] = v
            except (TypeError, ValueError):
                log_record[k] = str(v)

        return json.dumps(log_record, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """
    Development-friendly colored formatter:
    TIMESTAMP | LEVEL | LOGGER | CORRELATION_ID | MESSAGE
    """

    COLOR_CODES = {
        "DEBUG": "\033[1;36;47m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;41m",
        "RESET": "\033[0m",
    }

    def __init__(self, fmt: str | None = None, datefmt: str | None = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)

    def format(self, record: LogRecord) -> str:
        color = self.COLOR_CODES.get(record.levelname, "")
        # only the level name is colored
        reset = self.COLOR_CODES["RESET"]
        timestamp = self.formatTime(record, self.datefmt)

        base = (
            f"{timestamp} | {color}{record.levelname:<10}{reset} | "
            f"{record.name:<30} | "
            f"{getattr(record, 'correlation_id', '-'):<10} | "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            base = base + "\n" + self.formatException(record.exc_info)

        return base

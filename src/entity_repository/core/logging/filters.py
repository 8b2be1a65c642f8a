# src/entity_repository/core/logging/filters.py
"""
Logging filters

Correlation id filter and helpers for logging.

A correlation id ties together every log line produced by one logical unit
of work (a request handled by the application, a job, a CLI command). The
repository layer does not create ids itself; callers set one with
`set_correlation_id()` or the `correlation_scope()` context manager and every
record logged in the same context carries it.

How it is intended to be used
------------------------------
1. The filter is installed by `make_dict_config()` (builder.py) on every handler:

     "filters": {"correlation_id": {"()": CorrelationIdFilter}},
     "handlers": {"console": {..., "filters": ["correlation_id", "redact"]}}

2. Callers set the id at the start of a unit of work:

     with correlation_scope("import-42"):
         await repo.create({...})

3. Records without an id get the sentinel "-", so format strings that
   reference `%(correlation_id)s` never raise KeyError.

`contextvars.ContextVar` keeps the value per asyncio task and across awaits,
unlike `threading.local()`.
"""

import contextvars
import logging
import uuid
from contextlib import contextmanager
from logging import LogRecord
from typing import Iterator

# Default is None to indicate "no correlation id set".
_correlation_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def set_correlation_id(correlation_id: str | None):
    """
    Set the correlation id in the current context and return the token to allow reset.

    Returns:
        token: contextvar.Token which can be passed to reset_correlation_id(token)
    """
    return _correlation_id_ctx.set(correlation_id)


def reset_correlation_id(token) -> None:
    """
    Reset the contextvar to the previously saved token returned by set_correlation_id().
    """
    _correlation_id_ctx.reset(token)


def get_correlation_id() -> str | None:
    """
    Retrieve the current context's correlation id (None when unset).
    """
    return _correlation_id_ctx.get()


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind a correlation id for the duration of the block (a new uuid4 hex when
    none is given) and restore the previous value on exit.
    """
    cid = correlation_id or uuid.uuid4().hex
    token = set_correlation_id(cid)
    try:
        yield cid
    finally:
        reset_correlation_id(token)


class CorrelationIdFilter(logging.Filter):
    """
    Logging filter that guarantees every LogRecord has a `correlation_id` attribute.

    The value is, in order of preference:
      * record.correlation_id (if passed explicitly via `extra`)
      * the contextvar value
      * the sentinel "-"

    Always returns True: the filter only annotates records.
    """

    def filter(self, record: LogRecord) -> bool:
        record.correlation_id = (
            getattr(record, "correlation_id", None) or get_correlation_id() or "-"
        )
        return True


# Redact sensitive information
class RedactFilter(logging.Filter):
    SENSITIVE = {"password", "secret", "token", "access_token", "refresh_token", "ssn", "authorization"}

    def filter(self, record: LogRecord) -> bool:
        # mask attributes on record that match SENSITIVE (keys passed through `extra`)
        for key in list(record.__dict__.keys()):
            if key.lower() in self.SENSITIVE:
                record.__dict__[key] = "***REDACTED***"
        return True

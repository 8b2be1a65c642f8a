import logging
from enum import Enum
from sqlalchemy.exc import DBAPIError
from .base import TransientPersistenceError

logger = logging.getLogger(__name__)

# =================================================================================================================
# Postgres error code mapping
# =================================================================================================================

# https://www.postgresql.org/docs/current/errcodes-appendix.html
class PostgresErrorCodes(str, Enum):
    SERIALIZATION_FAILURE = "40001"
    DEADLOCK_DETECTED = "40P01"
    LOCK_NOT_AVAILABLE = "55P03"


TRANSIENT_PGCODES = {code.value for code in PostgresErrorCodes}

# Fallback for drivers without SQLSTATE diagnostics (SQLite, MySQL, ...)
TRANSIENT_MESSAGES = [
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not serialize access",
    "lock wait timeout exceeded",
    "try restarting transaction",
]


# =================================================================================================================
# Classifiers
# =================================================================================================================

def _match_any(msg: str, keywords: list[str]) -> bool:
    return any(keyword in msg for keyword in keywords)


def _extract_pgcode(orig) -> str | None:
    """
    Read the SQLSTATE from a driver exception.
    psycopg exposes `pgcode` (and `sqlstate`), asyncpg exposes `sqlstate`.
    """
    for attr in ("pgcode", "sqlstate"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    return None


def is_transient_error(exc: BaseException) -> bool:
    """
    Decide whether a failed transaction may succeed when run again.

    Transient:
        - TransientPersistenceError raised by application code
        - DBAPIError whose connection was invalidated (dropped connection)
        - DBAPIError with a serialization / deadlock / lock SQLSTATE
        - DBAPIError whose driver message reports a lock or deadlock
    Everything else (integrity errors, programming errors, ...) is permanent.
    """
    if isinstance(exc, TransientPersistenceError):
        return True

    if not isinstance(exc, DBAPIError):
        return False

    if exc.connection_invalidated:
        logger.debug("tx.classify.connection_invalidated")
        return True

    orig = exc.orig
    pgcode = _extract_pgcode(orig)
    if pgcode:
        transient = pgcode in TRANSIENT_PGCODES
        logger.debug("tx.classify.pgcode", extra={"pgcode": pgcode, "transient": transient})
        return transient

    msg = str(orig) if orig is not None else str(exc)
    transient = _match_any(msg.lower(), TRANSIENT_MESSAGES)
    if transient:
        logger.debug("tx.classify.message", extra={"message_snippet": msg[:200]})
    return transient

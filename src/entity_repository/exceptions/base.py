"""
Custom exceptions for repository-related operations.

Only the cases listed here are raised by the repository layer itself. Errors
coming from the persistence engine (SQLAlchemy / the DBAPI driver) are never
wrapped: they reach the caller as the engine raised them.
"""

from typing import Iterable

# canonical repository-level exception

class RepositoryError(Exception):
    """
    Base exception for repository errors.

    - message: human-friendly message (safe to show to clients)
    - fields: optional list of field names related to the error (e.g., ['email'])
    - constraint: optional DB constraint name or identifier (for logs only)
    - error_code: canonical short code (e.g., 'not_found', 'invalid_field') used by clients
    """

    # Map canonical error_code -> default HTTP status.
    ERROR_CODE_TO_STATUS = {
        "not_found": 404,
        "invalid_field": 422,
        "configuration": 500,
        "transaction": 500,
        "transient": 503,
        # fallback: default to 400 for general repository errors
    }

    def __init__(self, message: str, *, fields: Iterable[str] | None = None,
                 constraint: str | None = None, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        self.fields = list(fields) if fields else None
        self.constraint = constraint
        self.error_code = error_code

    def __str__(self) -> str:
        base = self.message
        parts = []
        if self.fields:
            parts.append(f"fields: {', '.join(self.fields)}")
        if self.constraint:
            parts.append(f"constraint: {self.constraint}")
        if self.error_code:
            parts.append(f"code: {self.error_code}")
        if parts:
            return f"{base} ({'; '.join(parts)})"
        return base

    def to_payload(self) -> dict:
        """
        Return a JSON-serializable dict suitable for an API response:
            {"detail": "...", "code": "not_found", "fields": ["id"]}
        The `constraint` value is never part of the payload.
        """
        payload = {"detail": self.message}
        if self.error_code:
            payload["code"] = self.error_code
        if self.fields:
            payload["fields"] = list(self.fields)
        return payload

    def http_status(self) -> int:
        """
        HTTP status that should accompany this error (400 when the code is unknown).
        """
        if self.error_code:
            return self.ERROR_CODE_TO_STATUS.get(self.error_code, 400)
        return 400


class NotFoundError(RepositoryError):
    def __init__(self, message: str = "Not found", *, fields: Iterable[str] | None = None):
        super().__init__(message, fields=fields, error_code="not_found")


class InvalidFieldError(RepositoryError):
    """Raised when the caller passes attribute names the model does not map at all."""

    def __init__(self, message: str, *, fields: Iterable[str] | None = None):
        super().__init__(message, fields=fields, error_code="invalid_field")


class ConfigurationError(RepositoryError):
    """
    The repository cannot be used as configured (no model bound, or the bound
    class is not a SQLAlchemy mapped class). Fatal: retrying does not help.
    """

    def __init__(self, message: str):
        super().__init__(message, error_code="configuration")


class TransactionError(RepositoryError):
    """Misuse of the transaction API, e.g. commit() with no open transaction."""

    def __init__(self, message: str):
        super().__init__(message, error_code="transaction")


class TransientPersistenceError(RepositoryError):
    """
    A failure that may succeed when the transaction is run again
    (serialization conflict, deadlock, locked database).

    Application code can raise it inside a transaction callback to ask the
    coordinator for another attempt.
    """

    def __init__(self, message: str = "Transient persistence failure"):
        super().__init__(message, error_code="transient")


__all__ = [
    "RepositoryError",
    "NotFoundError",
    "InvalidFieldError",
    "ConfigurationError",
    "TransactionError",
    "TransientPersistenceError",
]

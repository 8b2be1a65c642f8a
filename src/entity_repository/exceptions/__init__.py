# entity_repository/
# │
# ├── exceptions/
# │   ├── __init__.py
# │   ├── base.py                    # Repository-level errors (NotFoundError, ConfigurationError, ...)
# │   └── transient_classifier.py    # Decides which engine failures a transaction may retry

from .base import (
    RepositoryError,
    NotFoundError,
    InvalidFieldError,
    ConfigurationError,
    TransactionError,
    TransientPersistenceError,
)
from .transient_classifier import is_transient_error

__all__ = [
    "RepositoryError",
    "NotFoundError",
    "InvalidFieldError",
    "ConfigurationError",
    "TransactionError",
    "TransientPersistenceError",
    "is_transient_error",
]

from .repositories import BaseRepository, TransactionCoordinator
from .events import EventDispatcher, RepositoryEventListener, get_event_dispatcher
from .database import Base, SoftDeleteMixin
from .exceptions import (
    RepositoryError,
    NotFoundError,
    InvalidFieldError,
    ConfigurationError,
    TransactionError,
    TransientPersistenceError,
)

__all__ = [
    "BaseRepository",
    "TransactionCoordinator",
    "EventDispatcher",
    "RepositoryEventListener",
    "get_event_dispatcher",
    "Base",
    "SoftDeleteMixin",
    "RepositoryError",
    "NotFoundError",
    "InvalidFieldError",
    "ConfigurationError",
    "TransactionError",
    "TransientPersistenceError",
]

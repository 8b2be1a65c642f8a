from .base import Base, SoftDeleteMixin, is_soft_deletable
from .session import get_engine, get_sessionmaker, get_async_session

__all__ = [
    "Base",
    "SoftDeleteMixin",
    "is_soft_deletable",
    "get_engine",
    "get_sessionmaker",
    "get_async_session",
]

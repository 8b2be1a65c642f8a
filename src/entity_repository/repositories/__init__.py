"""
Repository layer initialization module.

Usage:
    from entity_repository.repositories import BaseRepository

    class ArticleRepository(BaseRepository[Article]):
        model = Article
"""

from .base_repository import BaseRepository
from .criteria import Criteria
from .relations import RelationDescriptor, RelationSynchronizer, extract_relations, get_relation_descriptors
from .transaction import TransactionCoordinator

__all__ = [
    "BaseRepository",
    "Criteria",
    "RelationDescriptor",
    "RelationSynchronizer",
    "extract_relations",
    "get_relation_descriptors",
    "TransactionCoordinator",
]

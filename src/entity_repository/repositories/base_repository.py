"""
Base repository class providing common database operations.

`BaseRepository` binds a SQLAlchemy model to an `AsyncSession` and gives it a
uniform surface: chainable criteria, finders, aggregates, cached reads,
mutations with deferred events (see `persistence.py`) and transaction control.

Model-specific repositories subclass it and set the class attributes:

    class ArticleRepository(BaseRepository[Article]):
        model = Article
        repository_id = "repository.articles"
        cache_clear_on = ("create", "delete")

    repo = ArticleRepository(session)
    published = await repo.where("status", "published").latest().find_all()

Repositories never commit on their own unless no transaction is open: a
mutation joins the caller's transaction, or opens and commits its own.
"""

import logging
from typing import Any, Callable, Awaitable, Generic, Iterable, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstanceState

from entity_repository.cache import RepositoryCache
from entity_repository.config import Settings, get_settings
from entity_repository.database.base import Base
from entity_repository.events import EventDispatcher, get_event_dispatcher
from entity_repository.exceptions import ConfigurationError, NotFoundError
from entity_repository.validators import MUTATION_KINDS
from entity_repository.validators.model_inspection import (
    fill_attributes,
    get_fillable,
    get_key_name,
    get_mapper,
    get_searchable,
)

from .criteria import Criteria, CriteriaMixin, resolve_column
from .persistence import PersistenceMixin
from .transaction import TransactionCoordinator

# Type variable for the model class
ModelType = TypeVar("ModelType", bound=Base)

# Setup logging
logger = logging.getLogger(__name__)


class BaseRepository(CriteriaMixin, PersistenceMixin, Generic[ModelType]):
    """
    Generic base repository.

    Class attributes (all optional except `model`, which may also be passed
    to `__init__`):
        model: the mapped class managed by the repository
        repository_id: event/cache identifier, default "repository.<table>"
        cache_enabled / cache_lifetime: read caching (settings when None)
        cache_clear_enabled / cache_clear_on: which mutations flush the cache
    """

    model: Type[ModelType] | None = None
    repository_id: str | None = None
    cache_enabled: bool | None = None
    cache_lifetime: int | None = None
    cache_clear_enabled: bool | None = None
    cache_clear_on: Iterable[str] | None = None

    def __init__(
        self,
        db: AsyncSession,
        model: Type[ModelType] | None = None,
        *,
        dispatcher: EventDispatcher | None = None,
        settings: Settings | None = None,
        cache: RepositoryCache | None = None,
    ):
        """
        Args:
            db: the async session all queries run on
            model: overrides the class-level `model`
            dispatcher: event dispatcher (process default when None)
            settings: package settings (`get_settings()` when None)
            cache: result cache (one per repository id when None)

        Raises:
            ConfigurationError: no model bound, the model is not mapped, or
                `cache_clear_on` names an unknown mutation kind.
        """
        self.db = db
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or get_event_dispatcher()
        self.set_model(model or self.model)

        self._repository_id = self.repository_id or f"repository.{get_mapper(self.model).local_table.name}"
        self._criteria = Criteria()
        self._skip_cache = False

        clear_on = self.cache_clear_on
        if clear_on is None:
            clear_on = self.settings.REPOSITORY_CACHE_CLEAR_ON
        unknown = [kind for kind in clear_on if kind not in MUTATION_KINDS]
        if unknown:
            raise ConfigurationError(f"Unknown cache_clear_on kind(s): {', '.join(unknown)}")
        self._cache_clear_on = frozenset(clear_on)

        self._cache = cache or self._make_cache()

    # =================================================================================================================
    # Metadata
    # =================================================================================================================

    def get_model(self) -> Type[ModelType]:
        return self.model

    def set_model(self, model: Type[ModelType] | None):
        get_mapper(model)  # raises ConfigurationError when not mapped
        self.model = model
        return self

    def get_repository_id(self) -> str:
        return self._repository_id

    def set_repository_id(self, repository_id: str):
        """Rebind events and the cache namespace to a new identifier."""
        self._repository_id = repository_id
        self._cache = self._make_cache()
        return self

    def get_key_name(self) -> str:
        return get_key_name(self.model)

    def get_table(self) -> str:
        return get_mapper(self.model).local_table.name

    def get_fillable(self) -> list[str]:
        return get_fillable(self.model)

    def get_fields_searchable(self) -> list[str]:
        return get_searchable(self.model)

    def _default_time_column(self) -> str:
        return "created_at" if hasattr(self.model, "created_at") else self.get_key_name()

    # =================================================================================================================
    # Entities
    # =================================================================================================================

    def create_model(self) -> ModelType:
        """A new, empty, transient instance of the model."""
        return self.model()

    def fill(self, entity: ModelType, attrs: dict[str, Any]) -> ModelType:
        """
        Assign fillable attributes. Unknown keys raise InvalidFieldError;
        mapped but non-fillable keys are ignored.
        """
        return fill_attributes(entity, attrs)

    async def _resolve_entity(self, id_or_entity, *, with_trashed: bool = False) -> ModelType | None:
        """Instance -> itself; key -> fresh lookup (uncached, no pending criteria)."""
        if isinstance(id_or_entity, self.model):
            return id_or_entity

        criteria = Criteria()
        if with_trashed:
            criteria.trashed = "with"
        stmt = criteria.apply(select(self.model), self.model)
        stmt = stmt.where(resolve_column(self.model, self.get_key_name()) == id_or_entity)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    # =================================================================================================================
    # Transactions
    # =================================================================================================================

    @property
    def transaction(self) -> TransactionCoordinator:
        return TransactionCoordinator.for_session(
            self.db,
            self.dispatcher,
            max_attempts=self.settings.REPOSITORY_TRANSACTION_ATTEMPTS,
        )

    async def begin_transaction(
        self,
        callback: Callable[[], Any] | None = None,
        before_commit: Callable[[], Any] | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        return await self.transaction.begin_transaction(callback, before_commit, max_attempts)

    async def commit(self) -> None:
        await self.transaction.commit()

    async def rollback(self) -> None:
        await self.transaction.rollback()

    # =================================================================================================================
    # Cache
    # =================================================================================================================

    def _make_cache(self) -> RepositoryCache:
        enabled = self.cache_enabled
        if enabled is None:
            enabled = self.settings.REPOSITORY_CACHE_ENABLED
        return RepositoryCache(
            self.get_repository_id(),
            lifetime=self.get_cache_lifetime(),
            enabled=enabled,
        )

    @property
    def cache(self) -> RepositoryCache:
        return self._cache

    def get_cache_lifetime(self) -> int:
        if self.cache_lifetime is not None:
            return self.cache_lifetime
        return self.settings.REPOSITORY_CACHE_LIFETIME

    def is_cache_clear_enabled(self) -> bool:
        if self.cache_clear_enabled is not None:
            return self.cache_clear_enabled
        return self.settings.REPOSITORY_CACHE_CLEAR_ENABLED

    def get_cache_clear_on(self) -> frozenset[str]:
        return self._cache_clear_on

    def skip_cache(self, skip: bool = True):
        """Bypass the cache for the next terminal call."""
        self._skip_cache = skip
        return self

    async def forget_cache(self) -> None:
        """Drop every cached result of this repository."""
        await self._cache.flush()
        logger.debug("repo.cache.forget", extra={"repository_id": self.get_repository_id()})

    async def execute_callback(
        self,
        method: str,
        args: Any,
        fn: Callable[[], Awaitable[Any]],
        criteria: Criteria | None = None,
    ) -> Any:
        """
        Run `fn` through the cache. The key is built from the method name,
        its arguments and the criteria signature.
        """
        skip = self._skip_cache
        self._skip_cache = False
        if skip or not self._cache.enabled:
            return await fn()

        key = self._cache.make_key(method, args, criteria.signature() if criteria else "")
        return await self._cache.remember(key, fn, restore=self._attach_cached)

    async def _attach_cached(self, value: Any) -> Any:
        """
        Bind a cached copy to this repository's session.

        An instance already in the identity map is returned as-is, like a
        query would, unless it has expired attributes and no pending changes
        (after a rollback, say). Anything else is merged without loading,
        which repopulates the expired instance from the copy.
        """
        if isinstance(value, list):
            return [await self._attach_cached(item) for item in value]

        state = sa_inspect(value, raiseerr=False)
        if not isinstance(state, InstanceState) or state.key is None:
            return value

        existing = self.db.sync_session.identity_map.get(state.key)
        if existing is not None:
            existing_state = sa_inspect(existing)
            if existing_state.modified or not existing_state.expired_attributes:
                return existing
        return await self.db.merge(value, load=False)

    # =================================================================================================================
    # Finders
    # =================================================================================================================

    async def _select_all(self, criteria: Criteria) -> list[ModelType]:
        result = await self.db.execute(criteria.apply(select(self.model), self.model))
        return list(result.scalars().all())

    async def _select_first(self, criteria: Criteria) -> ModelType | None:
        if criteria.limit is None:
            criteria.limit = 1
        result = await self.db.execute(criteria.apply(select(self.model), self.model))
        return result.scalars().first()

    async def find(self, id: Any) -> ModelType | None:
        """
        Get an entity by primary key (pending criteria such as
        `with_relations()` or `with_trashed()` apply).

        Returns:
            The entity if found, otherwise None
        """
        criteria = self._consume_criteria()
        criteria.wheres.append((self.get_key_name(), "=", id))

        entity = await self.execute_callback("find", (id,), lambda: self._select_first(criteria), criteria)
        logger.debug("repo.find", extra={"repository_id": self.get_repository_id(), "id": id, "found": entity is not None})
        return entity

    async def find_or_fail(self, id: Any) -> ModelType:
        """
        Get an entity by primary key or raise NotFoundError.
        """
        entity = await self.find(id)
        if entity is None:
            raise NotFoundError(f"{self.model.__name__} with ID {id} not found", fields=[self.get_key_name()])
        return entity

    async def find_or_new(self, id: Any) -> ModelType:
        """The entity, or a new unsaved instance when it does not exist."""
        entity = await self.find(id)
        return entity if entity is not None else self.create_model()

    async def find_by(self, column: str, value: Any) -> ModelType | None:
        criteria = self._consume_criteria()
        criteria.wheres.append((column, "=", value))
        return await self.execute_callback("find_by", (column, value), lambda: self._select_first(criteria), criteria)

    async def find_first(self) -> ModelType | None:
        criteria = self._consume_criteria()
        return await self.execute_callback("find_first", (), lambda: self._select_first(criteria), criteria)

    async def find_all(self) -> list[ModelType]:
        criteria = self._consume_criteria()
        entities = await self.execute_callback("find_all", (), lambda: self._select_all(criteria), criteria)
        logger.debug("repo.find_all", extra={"repository_id": self.get_repository_id(), "count": len(entities)})
        return entities

    async def find_where(self, where) -> list[ModelType]:
        return await self.where(where).find_all()

    async def find_where_in(self, column: str, values: Iterable[Any]) -> list[ModelType]:
        return await self.where_in(column, values).find_all()

    async def find_where_not_in(self, column: str, values: Iterable[Any]) -> list[ModelType]:
        return await self.where_not_in(column, values).find_all()

    async def find_where_has(self, relation: str, clauses=None) -> list[ModelType]:
        return await self.where_has(relation, clauses).find_all()

    async def first_where(self, where) -> ModelType | None:
        return await self.where(where).find_first()

    async def first_latest(self, column: str | None = None) -> ModelType | None:
        return await self.latest(column).find_first()

    async def first_oldest(self, column: str | None = None) -> ModelType | None:
        return await self.oldest(column).find_first()

    # =================================================================================================================
    # Aggregates (uncached)
    # =================================================================================================================

    async def _aggregate(self, fn, column: str | None = None):
        criteria = self._consume_criteria()
        target = fn() if column is None else fn(resolve_column(self.model, column))
        stmt = criteria.apply_filters(select(target).select_from(self.model), self.model)
        result = await self.db.execute(stmt)
        return result.scalar()

    async def count(self, column: str | None = None) -> int:
        """Count rows matching the pending criteria (non-null `column` values when given)."""
        return int(await self._aggregate(func.count, column) or 0)

    async def exists(self) -> bool:
        return await self.count() > 0

    async def min(self, column: str):
        return await self._aggregate(func.min, column)

    async def max(self, column: str):
        return await self._aggregate(func.max, column)

    async def avg(self, column: str):
        return await self._aggregate(func.avg, column)

    async def sum(self, column: str):
        return await self._aggregate(func.sum, column)

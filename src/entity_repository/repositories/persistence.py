"""
Mutation operations of the repository.

Every mutation follows the same path inside one transaction scope (joining
the caller's transaction when one is open):

    resolve entity -> extract relations (sync_relations) -> fill
      -> save -> sync relations -> queue a deferred event

Queued events (`{repository_id}.entity.created|updated|deleted|restored`,
payload `[repository, entity]`) are dispatched only after the outer commit.
Engine errors propagate as raised; a missing entity is reported by the
return value (`None` / `False`), never by an exception.
"""

import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import insert as sa_insert

from entity_repository.database.base import is_soft_deletable, utcnow
from entity_repository.events import DeferredEvent
from entity_repository.exceptions import InvalidFieldError, RepositoryError
from entity_repository.validators.model_inspection import (
    find_unknown_model_kwargs,
    get_dirty_attributes,
    get_identity,
)

from .relations import RelationSynchronizer, extract_relations

logger = logging.getLogger(__name__)


def chunk_where(where) -> list[tuple[str, str, Any]]:
    """
    `["status", "=", "active", "kind", "=", "x"]` or
    `[["status", "=", "active"], ["kind", "=", "x"]]` -> list of triples.
    """
    items = list(where or [])
    if items and all(isinstance(item, (list, tuple)) for item in items):
        chunks = [tuple(item) for item in items]
    else:
        chunks = [tuple(items[i:i + 3]) for i in range(0, len(items), 3)]

    if not chunks or any(len(chunk) != 3 for chunk in chunks):
        raise RepositoryError(
            "update_or_create() expects (column, operator, value) triples",
            error_code="invalid_argument",
        )
    return chunks


class PersistenceMixin:
    """
    Mixed into BaseRepository. Relies on: `db`, `model`, `transaction`,
    `dispatcher`, `create_model()`, `fill()`, `get_repository_id()`,
    `_consume_criteria()`, `_select_all()`, `_resolve_entity()`.
    """

    # =================================================================================================================
    # Persistence hooks (override to customize how entities are written)
    # =================================================================================================================

    async def save_entity(self, entity) -> bool:
        """Add and flush `entity`. Return False to report a failed save."""
        self.db.add(entity)
        await self.db.flush()
        return True

    async def delete_entity(self, entity) -> bool:
        """Soft delete (stamp `deleted_at`) or hard delete, then flush."""
        if is_soft_deletable(entity):
            entity.deleted_at = utcnow()
            self.db.add(entity)
        else:
            await self.db.delete(entity)
        await self.db.flush()
        return True

    async def restore_entity(self, entity) -> bool:
        entity.deleted_at = None
        self.db.add(entity)
        await self.db.flush()
        return True

    @property
    def relation_synchronizer(self) -> RelationSynchronizer:
        return RelationSynchronizer(self.db)

    async def _queue_event(self, kind: str, entity) -> None:
        repository_id = self.get_repository_id()
        event = DeferredEvent(
            event_name=f"{repository_id}.entity.{kind}",
            repository_id=repository_id,
            payload=[self, entity],
        )
        await self.transaction.defer(event, self.dispatcher)

    def _log_extra(self, operation: str, **extra) -> dict:
        return {"repository_id": self.get_repository_id(), "model": self.model.__name__, "operation": operation, **extra}

    # =================================================================================================================
    # Create
    # =================================================================================================================

    async def create(self, attrs: Mapping[str, Any] | None = None, sync_relations: bool = False):
        """
        Create a new entity. Queues exactly one `created` event once the save
        succeeds (also for empty `attrs`). Returns the entity, or None when
        `save_entity()` reported failure.
        """
        self._consume_criteria()
        attrs = dict(attrs or {})
        logger.debug("repo.create.start", extra=self._log_extra("create", provided_keys=sorted(attrs)))
        start = time.perf_counter()

        async with self.transaction.scope():
            entity = self.create_model()
            relations: dict[str, Any] = {}
            if sync_relations:
                relations, attrs = extract_relations(entity, attrs)

            self.fill(entity, attrs)

            if not await self.save_entity(entity):
                logger.warning("repo.create.not_saved", extra=self._log_extra("create"))
                return None

            if relations:
                await self.relation_synchronizer.sync(entity, relations, "create")

            await self._queue_event("created", entity)

        logger.info(
            "repo.create.success",
            extra=self._log_extra(
                "create", id=get_identity(entity), duration_ms=int((time.perf_counter() - start) * 1000)
            ),
        )
        return entity

    async def create_many(self, attrs, sync_relations: bool = False) -> list:
        """One `create()` per mapping in `attrs` (a single mapping creates one entity)."""
        if isinstance(attrs, Mapping):
            items = [attrs]
        else:
            items = list(attrs or [])

        async with self.transaction.scope():
            return [await self.create(item, sync_relations) for item in items]

    async def insert(self, values) -> bool:
        """
        Bulk INSERT without building entities. A placeholder entity from
        `create_model()` is the subject of the single `created` event.
        """
        self._consume_criteria()
        rows = [dict(values)] if isinstance(values, Mapping) else [dict(v) for v in values]

        for row in rows:
            unknown = find_unknown_model_kwargs(self.model, row)
            if unknown:
                raise InvalidFieldError(
                    f"Unknown field(s) for {self.model.__name__}: {', '.join(sorted(unknown))}",
                    fields=sorted(unknown),
                )

        if not rows:
            logger.debug("repo.insert.empty", extra=self._log_extra("insert"))
            return True

        async with self.transaction.scope():
            placeholder = self.create_model()
            await self.db.execute(sa_insert(self.model), rows)
            await self._queue_event("created", placeholder)

        logger.info("repo.insert.success", extra=self._log_extra("insert", rows=len(rows)))
        return True

    # =================================================================================================================
    # Update
    # =================================================================================================================

    async def update(self, id_or_entity, attrs: Mapping[str, Any] | None = None, sync_relations: bool = False):
        """
        Update an entity given by primary key or instance.

        Returns None when no such entity exists. `updated` is queued only when
        something changed: the changed columns, or always when `sync_relations`
        is true (relation writes are not compared).
        """
        self._consume_criteria()
        attrs = dict(attrs or {})
        logger.debug("repo.update.start", extra=self._log_extra("update", provided_keys=sorted(attrs)))

        async with self.transaction.scope():
            entity = await self._resolve_entity(id_or_entity)
            if entity is None:
                logger.warning("repo.update.not_found", extra=self._log_extra("update", id=id_or_entity))
                return None

            saved, dirty = await self._update_entity(entity, attrs, sync_relations)
            if not saved:
                logger.warning("repo.update.not_saved", extra=self._log_extra("update", id=get_identity(entity)))
                return None

        logger.info(
            "repo.update.success",
            extra=self._log_extra("update", id=get_identity(entity), dirty_fields=sorted(dirty)),
        )
        return entity

    async def _update_entity(self, entity, attrs: dict, sync_relations: bool) -> tuple[bool, list[str]]:
        relations: dict[str, Any] = {}
        if sync_relations:
            relations, attrs = extract_relations(entity, attrs)

        self.fill(entity, attrs)
        dirty = ["*"] if sync_relations else get_dirty_attributes(entity)

        saved = await self.save_entity(entity)
        if not saved:
            return False, dirty

        if relations:
            await self.relation_synchronizer.sync(entity, relations, "update")

        if dirty:
            await self._queue_event("updated", entity)
        return True, dirty

    async def update_set(self, attrs: Mapping[str, Any] | None = None, sync_relations: bool = False) -> bool:
        """
        Apply `attrs` to every row matched by the pending criteria.

        Returns False when nothing matched, otherwise True iff every save
        succeeded. Each saved row queues its own `updated` event.
        """
        criteria = self._consume_criteria()
        attrs = dict(attrs or {})

        async with self.transaction.scope():
            entities = await self._select_all(criteria)
            if not entities:
                logger.warning("repo.update_set.no_match", extra=self._log_extra("update_set"))
                return False

            results = []
            for entity in entities:
                relations: dict[str, Any] = {}
                plain = attrs
                if sync_relations:
                    relations, plain = extract_relations(entity, attrs)

                self.fill(entity, plain)
                saved = await self.save_entity(entity)
                results.append(saved)
                if not saved:
                    continue

                if relations:
                    await self.relation_synchronizer.sync(entity, relations, "update")
                await self._queue_event("updated", entity)

        logger.info(
            "repo.update_set.success",
            extra=self._log_extra("update_set", matched=len(results), failed=results.count(False)),
        )
        return False not in results

    async def update_or_create(
        self,
        where,
        attrs: Mapping[str, Any],
        sync_relations: bool = False,
        merge: bool = False,
    ):
        """
        Update every row matching `where` with `attrs` (returning the last
        result), or create one when nothing matches.

        `where` is a flat `[column, operator, value, ...]` list or a list of
        triples. With `merge=True` the first triple's `{column: value}` is
        stored as well (`attrs` win on conflict).
        """
        chunks = chunk_where(where)
        criteria = self._consume_criteria()
        for column, operator, value in chunks:
            criteria.wheres.append((column, operator, value))

        attributes = dict(attrs or {})
        if merge:
            attributes = {chunks[0][0]: chunks[0][2], **attributes}

        async with self.transaction.scope():
            entities = await self._select_all(criteria)
            if not entities:
                return await self.create(attributes, sync_relations)

            result = None
            for entity in entities:
                result = await self.update(entity, attributes, sync_relations)
            return result

    async def store(self, id=None, attrs: Mapping[str, Any] | None = None, sync_relations: bool = False):
        """`update()` when `id` is given, `create()` otherwise."""
        if id is not None:
            return await self.update(id, attrs, sync_relations)
        return await self.create(attrs, sync_relations)

    # =================================================================================================================
    # Delete / restore
    # =================================================================================================================

    async def delete(self, id_or_entity, sync_relations: Iterable[str] | Mapping[str, Any] | None = None):
        """
        Delete an entity given by primary key or instance; returns it, or
        False when it does not exist or could not be deleted.

        Relations named in `sync_relations` are detached before the row goes.
        """
        self._consume_criteria()

        async with self.transaction.scope():
            entity = await self._resolve_entity(id_or_entity)
            if entity is None:
                logger.warning("repo.delete.not_found", extra=self._log_extra("delete", id=id_or_entity))
                return False

            if sync_relations:
                if not isinstance(sync_relations, Mapping):
                    sync_relations = {name: None for name in sync_relations}
                relations, _ = extract_relations(entity, sync_relations)
                if relations:
                    await self.relation_synchronizer.sync(entity, relations, "delete")

            if not await self.delete_entity(entity):
                logger.warning("repo.delete.not_deleted", extra=self._log_extra("delete", id=get_identity(entity)))
                return False

            await self._queue_event("deleted", entity)

        logger.info("repo.delete.success", extra=self._log_extra("delete", id=get_identity(entity)))
        return entity

    async def deletes(self) -> bool | None:
        """
        Delete every row matched by the pending criteria.

        None when nothing matched, the row's result when one matched, and
        `all(results)` when several matched. Each deleted row queues `deleted`.
        """
        criteria = self._consume_criteria()

        async with self.transaction.scope():
            entities = await self._select_all(criteria)
            if not entities:
                return None

            results = []
            for entity in entities:
                deleted = await self.delete_entity(entity)
                results.append(deleted)
                if deleted:
                    await self._queue_event("deleted", entity)

        logger.info(
            "repo.deletes.success",
            extra=self._log_extra("deletes", matched=len(results), failed=results.count(False)),
        )
        return results[0] if len(results) == 1 else all(results)

    async def deletes_by(self, column: str, values: Iterable[Any]) -> bool | None:
        self.where_in(column, values)
        return await self.deletes()

    async def restore(self, id_or_entity):
        """
        Restore a soft-deleted entity and queue `restored`. Returns the entity,
        or False for unknown, hard-deleted, non-trashed or non-soft-deletable rows.
        """
        self._consume_criteria()

        async with self.transaction.scope():
            entity = await self._resolve_entity(id_or_entity, with_trashed=True)
            if entity is None or not is_soft_deletable(entity) or entity.deleted_at is None:
                logger.warning("repo.restore.not_restorable", extra=self._log_extra("restore", id=id_or_entity))
                return False

            if not await self.restore_entity(entity):
                return False

            await self._queue_event("restored", entity)

        logger.info("repo.restore.success", extra=self._log_extra("restore", id=get_identity(entity)))
        return entity

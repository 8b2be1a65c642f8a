"""
Relation extraction and synchronization.

`extract_relations()` splits an attribute mapping into relation payloads and
plain attributes. `RelationSynchronizer` writes the relation payloads:

    cardinality "one"   (many-to-one, one-to-one)
        payload: instance | primary key | mapping | None
        strategy assign: load or create the related row and assign it
        mode "delete" or strategy detach: assign None (nulls the key)

    cardinality "many"  (one-to-many, many-to-many)
        payload: iterable of instances | primary keys | mappings
        strategy sync:   collection becomes exactly the given set
        strategy attach: add the missing members
        strategy detach: remove the given members (all when empty)
        mode "delete":   remove every member

A mapping payload updates the related row when it carries an existing primary
key, otherwise it creates a new row. A primary key with no row raises
NotFoundError. Related collections are loaded through `awaitable_attrs`, so
models must mix in `AsyncAttrs`.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from sqlalchemy.ext.asyncio import AsyncSession

from entity_repository.exceptions import ConfigurationError, NotFoundError
from entity_repository.validators.model_inspection import (
    fill_attributes,
    get_key_name,
    get_mapper,
)

logger = logging.getLogger(__name__)

Cardinality = Literal["one", "many"]
Strategy = Literal["assign", "sync", "attach", "detach"]
SyncMode = Literal["create", "update", "delete"]

STRATEGIES = ("assign", "sync", "attach", "detach")
DEFAULT_STRATEGY = {"one": "assign", "many": "sync"}


@dataclass(frozen=True)
class RelationDescriptor:
    name: str
    cardinality: Cardinality
    strategy: Strategy
    target: type


def get_relation_descriptors(model) -> dict[str, RelationDescriptor]:
    """
    Describe the relationships declared on a mapped class (or instance).

    Strategies default to "assign" for scalar relationships and "sync" for
    collections; a model overrides them with `__relation_strategies__`,
    e.g. `{"tags": "attach"}`.
    """
    mapper = get_mapper(model)
    overrides = getattr(mapper.class_, "__relation_strategies__", {}) or {}

    descriptors: dict[str, RelationDescriptor] = {}
    for rel in mapper.relationships:
        cardinality = "many" if rel.uselist else "one"
        strategy = overrides.get(rel.key, DEFAULT_STRATEGY[cardinality])
        if strategy not in STRATEGIES:
            raise ConfigurationError(
                f"Unknown relation strategy {strategy!r} for {mapper.class_.__name__}.{rel.key}"
            )
        descriptors[rel.key] = RelationDescriptor(
            name=rel.key,
            cardinality=cardinality,
            strategy=strategy,
            target=rel.mapper.class_,
        )
    return descriptors


def extract_relations(entity, attributes: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Split `attributes` into `(relations, remaining)`.

    Keys naming a declared relationship of `entity` go to `relations`, every
    other key stays in `remaining`. The input mapping is not modified.
    """
    declared = get_relation_descriptors(entity)
    relations: dict[str, Any] = {}
    remaining: dict[str, Any] = {}
    for key, value in attributes.items():
        if key in declared:
            relations[key] = value
        else:
            remaining[key] = value
    return relations, remaining


def _as_items(payload: Any) -> list:
    if payload is None:
        return []
    if isinstance(payload, (str, bytes, Mapping)) or not isinstance(payload, Iterable):
        return [payload]
    return list(payload)


class RelationSynchronizer:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def sync(self, entity, relations: Mapping[str, Any], mode: SyncMode = "update") -> None:
        """
        Apply every relation payload in `relations` to `entity`, then flush once.
        Names that are not declared relationships are ignored.
        """
        descriptors = get_relation_descriptors(entity)

        for name, payload in relations.items():
            descriptor = descriptors.get(name)
            if descriptor is None:
                continue

            if descriptor.cardinality == "one":
                await self._sync_one(entity, descriptor, payload, mode)
            else:
                await self._sync_many(entity, descriptor, payload, mode)

            logger.debug(
                "repo.relations.sync",
                extra={
                    "model": type(entity).__name__,
                    "relation": name,
                    "cardinality": descriptor.cardinality,
                    "strategy": descriptor.strategy,
                    "mode": mode,
                },
            )

        await self.session.flush()

    async def _sync_one(self, entity, descriptor: RelationDescriptor, payload: Any, mode: SyncMode) -> None:
        # load the current value so reassignment does not lazy load outside the greenlet
        await getattr(entity.awaitable_attrs, descriptor.name)

        if mode == "delete" or descriptor.strategy == "detach":
            setattr(entity, descriptor.name, None)
            return

        related = await self._resolve(descriptor.target, payload)
        setattr(entity, descriptor.name, related)

    async def _sync_many(self, entity, descriptor: RelationDescriptor, payload: Any, mode: SyncMode) -> None:
        collection = await getattr(entity.awaitable_attrs, descriptor.name)

        if mode == "delete":
            for member in list(collection):
                collection.remove(member)
            return

        related = []
        for item in _as_items(payload):
            resolved = await self._resolve(descriptor.target, item)
            if resolved is not None and resolved not in related:
                related.append(resolved)

        strategy = descriptor.strategy
        if strategy == "detach":
            to_remove = list(collection) if not related else [m for m in related if m in collection]
            for member in to_remove:
                collection.remove(member)
            return

        if strategy == "sync":
            for member in list(collection):
                if member not in related:
                    collection.remove(member)

        add = getattr(collection, "append", None) or collection.add
        for member in related:
            if member not in collection:
                add(member)

    async def _resolve(self, target: type, item: Any):
        """Turn one payload item into a persistent (or pending) instance of `target`."""
        if item is None:
            return None

        if isinstance(item, target):
            self.session.add(item)
            return item

        key_name = get_key_name(target)

        if isinstance(item, Mapping):
            key = item.get(key_name)
            if key is not None:
                related = await self.session.get(target, key)
                if related is None:
                    raise NotFoundError(f"{target.__name__} with ID {key} not found", fields=[key_name])
            else:
                related = target()
                self.session.add(related)
            fill_attributes(related, {k: v for k, v in item.items() if k != key_name})
            return related

        related = await self.session.get(target, item)
        if related is None:
            raise NotFoundError(f"{target.__name__} with ID {item} not found", fields=[key_name])
        return related

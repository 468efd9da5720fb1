"""Batch eager loading of declared relations.

For every requested relation the loader issues one query keyed by the
collected parent keys (two for ``belongsToMany``: pivot rows first, then the
related rows), converts the rows with the definition's factory, loads nested
relations on the whole related batch, and only then groups the related
entities back onto their parents.  The number of statements therefore depends
on the relation tree, never on the number of parents.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from typing import TYPE_CHECKING, Any

from .builder import QueryBuilder
from .exceptions import UnsupportedRelationError
from .pagination import DEFAULT_RELATION_PER_PAGE
from .parser import RelationMeta, parse_relations
from .relations import RelationDefinition, RelationKind, RelationRegistry
from .tools import quote


if TYPE_CHECKING:
    from .executor import StatementExecutor
    from .parser import RelationSpec
    from .relations import Owner


logger = logging.getLogger(__name__)


class EagerLoader:
    """Attach related entities to already-fetched parents.

    Parents may be :class:`~sqla_relquery.entity.Entity` implementations or
    plain row mappings; loaded relations are stored with ``set_relation`` or
    as a mapping key respectively.

    Example::

        loader = EagerLoader(executor, registry)
        await loader.load(users, ["posts.comments", "roles", {"profile": {"query": only_public}}])
    """

    __slots__ = ("_executor", "_registry")

    def __init__(self, executor: StatementExecutor, registry: RelationRegistry | None = None) -> None:
        self._executor = executor
        self._registry = registry if registry is not None else RelationRegistry()

    async def load(
        self,
        parents: Sequence[Any],
        relations: Iterable[RelationSpec] | RelationSpec,
        *,
        owner: Owner | None = None,
    ) -> None:
        """Load *relations* onto *parents*.

        Args:
            parents: Entities of one type (empty is a no-op).
            relations: Relation specs in any accepted wire shape.
            owner: Entity type or table the relations are declared on;
                defaults to the type of the first parent.

        Raises:
            UnsupportedRelationError: For ``morphTo`` relations, or a
                polymorphic relation on an owner without a morph type tag.
        """
        if not parents:
            return

        owner = owner if owner is not None else type(parents[0])
        for meta in parse_relations(relations):
            definition = self._registry.lookup(owner, meta.key)
            if definition is None:
                logger.info("Relation '%s' is not declared on %s, skipping", meta.key, _owner_name(owner))
                continue

            logger.debug(
                "Eager loading %s relation '%s' for %d parents",
                definition.kind.value,
                meta.key,
                len(parents),
            )
            await self._load_relation(parents, owner, meta, definition)

    async def _load_relation(
        self,
        parents: Sequence[Any],
        owner: Owner,
        meta: RelationMeta,
        definition: RelationDefinition,
    ) -> None:
        kind = definition.kind
        if kind is RelationKind.MORPH_TO:
            raise UnsupportedRelationError(f"Eager loading morphTo relation '{meta.key}' is not supported")

        if kind is RelationKind.BELONGS_TO:
            await self._load_belongs_to(parents, meta, definition)
        elif kind is RelationKind.BELONGS_TO_MANY:
            await self._load_belongs_to_many(parents, meta, definition)
        else:
            await self._load_has(parents, owner, meta, definition)

    def _query(self, table: str) -> QueryBuilder[Any]:
        # raw rows: conversion happens in _materialize, after constraints ran
        return QueryBuilder(self._executor, table, registry=self._registry)

    def _constrain(self, query: QueryBuilder[Any], definition: RelationDefinition, meta: RelationMeta) -> None:
        query.constrain(definition.constraint).constrain(meta.constraint)

    async def _materialize(
        self,
        rows: Iterable[Mapping[str, Any]],
        meta: RelationMeta,
        definition: RelationDefinition,
    ) -> list[Any]:
        related = [definition.make(row) for row in rows]
        if related and meta.nested:
            await self.load(related, meta.nested, owner=definition.related_type or definition.related_table)

        return related

    async def _load_has(
        self,
        parents: Sequence[Any],
        owner: Owner,
        meta: RelationMeta,
        definition: RelationDefinition,
    ) -> None:
        keys = distinct_keys(parents, definition.owner_column)
        if not keys:
            _attach_empty(parents, meta.key, definition)
            return

        query = self._query(definition.related_table).where_in(definition.related_column, keys)
        if definition.kind in (RelationKind.MORPH_ONE, RelationKind.MORPH_MANY):
            if isinstance(owner, str):
                raise UnsupportedRelationError(
                    f"Polymorphic relation '{meta.key}' needs an entity type owner, got table '{owner}'"
                )
            query.where(definition.morph_type_field, "=", self._registry.morph_type(owner))  # type: ignore[arg-type]
        self._constrain(query, definition, meta)

        if meta.paginate and definition.kind in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
            await self._load_paginated(parents, query, meta, definition)
            return

        related = await self._materialize(await query.fetch_rows(), meta, definition)
        groups = group_by_key(related, definition.related_column)
        for parent in parents:
            group = groups.get(get_value(parent, definition.owner_column), [])
            set_relation(parent, meta.key, group if definition.kind.is_many else (group[0] if group else None))

    async def _load_paginated(
        self,
        parents: Sequence[Any],
        query: QueryBuilder[Any],
        meta: RelationMeta,
        definition: RelationDefinition,
    ) -> None:
        # one page over the whole related batch, shared by every parent
        page = await query.paginate(
            per_page=meta.per_page or DEFAULT_RELATION_PER_PAGE,
            page=meta.page or 1,
        )
        related = await self._materialize(page.data, meta, definition)
        groups = group_by_key(related, definition.related_column)
        pagination = {
            "page": page.current_page,
            "perPage": page.per_page,
            "total": page.total,
            "lastPage": page.last_page,
        }
        for parent in parents:
            set_relation(parent, meta.key, {
                "data": groups.get(get_value(parent, definition.owner_column), []),
                "meta": dict(pagination),
            })

    async def _load_belongs_to(
        self,
        children: Sequence[Any],
        meta: RelationMeta,
        definition: RelationDefinition,
    ) -> None:
        keys = distinct_keys(children, definition.owner_column)
        if not keys:
            _attach_empty(children, meta.key, definition)
            return

        query = self._query(definition.related_table).where_in(definition.foreign_key, keys)
        self._constrain(query, definition, meta)
        related = await self._materialize(await query.fetch_rows(), meta, definition)

        lookup: dict[Any, Any] = {}
        for item in related:
            lookup.setdefault(get_value(item, definition.foreign_key), item)
        for child in children:
            set_relation(child, meta.key, lookup.get(get_value(child, definition.owner_column)))

    async def _load_belongs_to_many(
        self,
        parents: Sequence[Any],
        meta: RelationMeta,
        definition: RelationDefinition,
    ) -> None:
        keys = distinct_keys(parents, definition.owner_column)
        if not keys:
            _attach_empty(parents, meta.key, definition)
            return

        foreign_pivot_key = definition.foreign_pivot_key
        related_pivot_key = definition.related_pivot_key
        pivot = (
            self._query(definition.pivot_table)  # type: ignore[arg-type]
            .select(quote(foreign_pivot_key), quote(related_pivot_key))  # type: ignore[arg-type]
            .where_in(foreign_pivot_key, keys)  # type: ignore[arg-type]
        )
        pivot_rows = await pivot.fetch_rows()

        related_keys = distinct_keys(pivot_rows, related_pivot_key)  # type: ignore[arg-type]
        related: list[Any] = []
        if related_keys:
            query = self._query(definition.related_table).where_in(definition.foreign_key, related_keys)
            self._constrain(query, definition, meta)
            related = await self._materialize(await query.fetch_rows(), meta, definition)

        lookup = {get_value(item, definition.foreign_key): item for item in related}
        groups: dict[Any, list[Any]] = {}
        for row in pivot_rows:
            item = lookup.get(row[related_pivot_key])
            if item is not None:
                groups.setdefault(row[foreign_pivot_key], []).append(item)

        for parent in parents:
            set_relation(parent, meta.key, groups.get(get_value(parent, definition.owner_column), []))


async def load_relations(
    executor: StatementExecutor,
    registry: RelationRegistry,
    parents: Sequence[Any],
    relations: Iterable[RelationSpec] | RelationSpec,
    *,
    owner: Owner | None = None,
) -> None:
    """Shortcut for ``EagerLoader(executor, registry).load(parents, relations)``."""
    await EagerLoader(executor, registry).load(parents, relations, owner=owner)


def get_value(item: Any, key: str) -> Any:
    """Attribute *key* of an entity or a row mapping."""
    if isinstance(item, Mapping):
        return item.get(key)

    return item.get_attribute(key)


def set_relation(item: Any, name: str, value: Any) -> None:
    if isinstance(item, MutableMapping):
        item[name] = value
    else:
        item.set_relation(name, value)


def set_attribute(item: Any, key: str, value: Any) -> None:
    if isinstance(item, MutableMapping):
        item[key] = value
    else:
        item.set_attribute(key, value)


def distinct_keys(items: Iterable[Any], key: str) -> list[Any]:
    """Distinct non-``None`` values of *key*, in first-seen order."""
    return list(dict.fromkeys(value for item in items if (value := get_value(item, key)) is not None))


def group_by_key(items: Iterable[Any], key: str) -> dict[Any, list[Any]]:
    groups: dict[Any, list[Any]] = {}
    for item in items:
        groups.setdefault(get_value(item, key), []).append(item)
    return groups


def _attach_empty(parents: Iterable[Any], name: str, definition: RelationDefinition) -> None:
    for parent in parents:
        set_relation(parent, name, [] if definition.kind.is_many else None)


def _owner_name(owner: Owner) -> str:
    return owner if isinstance(owner, str) else owner.__name__

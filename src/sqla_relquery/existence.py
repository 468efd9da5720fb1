"""Relationship-existence predicates (``where_has`` and friends).

A relation path ``"a.b.c"`` compiles to nested correlated subqueries: the
subquery for ``a`` is correlated to the outer query, and its own WHERE clause
holds the existence predicate for ``b`` (correlated to ``a``'s table), and so
on.  Only the last segment receives the caller's operator, count and
constraint; intermediate segments test ``>= 1``.

The correlation condition is ``related.<related key> = outer.<owner key>``.
For ``hasOne``/``hasMany`` the related table holds the foreign key; for
``belongsTo`` the owner does, and :class:`RelationDefinition` already names
the owner-side column ``local_key`` in both cases, so each level derives its
condition from that level's definition.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Final

from .exceptions import RelationNotFoundError, UnsupportedRelationError
from .relations import RelationDefinition, RelationKind
from .state import Fragment
from .tools import check_operator


if TYPE_CHECKING:
    from .builder import QueryBuilder
    from .relations import Owner


CORRELATABLE_KINDS: Final[frozenset[RelationKind]] = frozenset({
    RelationKind.HAS_ONE,
    RelationKind.HAS_MANY,
    RelationKind.BELONGS_TO,
})


def correlation(definition: RelationDefinition, name: str, outer: str) -> str:
    """Unquoted join condition between the related table and *outer*.

    Raises:
        UnsupportedRelationError: For ``belongsToMany`` and polymorphic kinds.
    """
    if definition.kind not in CORRELATABLE_KINDS:
        raise UnsupportedRelationError(
            f"Relationship existence queries are not supported for {definition.kind.value} "
            f"relation '{name}'"
        )

    return f"{definition.related_table}.{definition.related_column} = {outer}.{definition.owner_column}"


def resolve(builder: QueryBuilder[Any], owner: Owner, name: str) -> RelationDefinition:
    registry = builder.registry
    definition = registry.lookup(owner, name) if registry is not None else None
    if definition is None:
        raise RelationNotFoundError(_owner_name(owner), name)

    return definition


def compile_has(
    builder: QueryBuilder[Any],
    relation: str | Sequence[str],
    constraint: Callable[[QueryBuilder[Any]], Any] | None = None,
    operator: str = ">=",
    count: int = 1,
    *,
    negate: bool = False,
) -> Fragment:
    """Compile the existence predicate for *relation* relative to *builder*.

    Args:
        builder: The outer query; supplies the registry, the owner type and
            the alias the subquery is correlated to.
        relation: Dotted relation path (or its pre-split segments).
        constraint: Applied to the innermost subquery.
        operator: Comparison against *count* (count form only).
        count: Minimum / exact number of related rows.
        negate: Produce ``NOT EXISTS (SELECT 1 ... LIMIT 1)`` instead of the
            count comparison.

    Returns:
        The predicate text with its bindings in placeholder order.

    Raises:
        RelationNotFoundError: If any path segment is not declared.
        UnsupportedRelationError: If any path segment is not correlatable.
        ValueError: For an operator outside the allow-list.
    """
    path = relation.split(".") if isinstance(relation, str) else list(relation)
    if not path or not all(path):
        raise ValueError(f"Invalid relation path {relation!r}")

    operator = check_operator(operator)
    owner: Owner = builder.entity_type or builder.table
    return _compile(builder, owner, builder.state.alias, path, constraint, operator, count, negate)


def _compile(
    builder: QueryBuilder[Any],
    owner: Owner,
    outer: str,
    path: list[str],
    constraint: Callable[[QueryBuilder[Any]], Any] | None,
    operator: str,
    count: int,
    negate: bool,
) -> Fragment:
    name, *rest = path
    definition = resolve(builder, owner, name)

    sub = builder.new_query(definition.related_table, entity_type=definition.related_type)
    sub.where_raw(correlation(definition, name, outer))
    sub.constrain(definition.constraint)

    if rest:
        nested = _compile(
            sub,
            definition.related_type or definition.related_table,
            definition.related_table,
            rest,
            constraint,
            operator,
            count,
            negate=False,
        )
        sub.where_raw(nested.sql, nested.bindings)
        if not negate:
            operator, count = ">=", 1
    else:
        sub.constrain(constraint)

    if negate:
        sub.select("1").limit(1)
        return Fragment(f"NOT EXISTS ({sub.to_sql()})", tuple(sub.bindings))

    sub.select("COUNT(*)")
    return Fragment.of(f"({sub.to_sql()}) {operator} ?", (*sub.bindings, count))


def _owner_name(owner: Owner) -> str:
    return owner if isinstance(owner, str) else owner.__name__

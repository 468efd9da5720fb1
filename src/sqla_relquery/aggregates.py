from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from .builder import QueryBuilder
from .exceptions import RelationNotFoundError, UnsupportedRelationError
from .loader import distinct_keys, get_value, set_attribute
from .relations import RelationDefinition, RelationKind, RelationRegistry
from .state import AggregateRequest
from .tools import aggregate_attribute, quote


if TYPE_CHECKING:
    from .executor import StatementExecutor
    from .relations import Owner


logger = logging.getLogger(__name__)

GROUP_KEY = "group_key"
AGGREGATE = "aggregate"


class AggregateAttacher:
    """Compute relationship aggregates per parent with one grouped query per request.

    The result lands on each parent as a synthetic attribute named
    ``{relation}Count`` or ``{relation}{Column}{Function}`` (``ordersAmountSum``).
    Parents without related rows get ``0`` for ``count`` and ``None`` for
    every other function.

    Example::

        await AggregateAttacher(executor, registry).attach(
            users,
            [AggregateRequest("count", "orders"), AggregateRequest("sum", "orders", "amount")],
        )
        users[0].get_attribute("ordersCount"), users[0].get_attribute("ordersAmountSum")
    """

    __slots__ = ("_executor", "_registry")

    def __init__(self, executor: StatementExecutor, registry: RelationRegistry | None = None) -> None:
        self._executor = executor
        self._registry = registry if registry is not None else RelationRegistry()

    async def attach(
        self,
        parents: Sequence[Any],
        requests: Iterable[AggregateRequest],
        *,
        owner: Owner | None = None,
    ) -> None:
        """Attach every requested aggregate to *parents*.

        Raises:
            RelationNotFoundError: If a requested relation is not declared.
            UnsupportedRelationError: For ``morphTo`` relations.
        """
        if not parents:
            return

        owner = owner if owner is not None else type(parents[0])
        for request in requests:
            definition = self._registry.lookup(owner, request.relation)
            if definition is None:
                raise RelationNotFoundError(owner if isinstance(owner, str) else owner.__name__, request.relation)

            logger.debug(
                "Aggregating %s(%s) over %s relation '%s' for %d parents",
                request.function,
                request.column or "*",
                definition.kind.value,
                request.relation,
                len(parents),
            )
            await self._attach_one(parents, owner, request, definition)

    async def _attach_one(
        self,
        parents: Sequence[Any],
        owner: Owner,
        request: AggregateRequest,
        definition: RelationDefinition,
    ) -> None:
        kind = definition.kind
        if kind is RelationKind.MORPH_TO:
            raise UnsupportedRelationError(f"Aggregates over morphTo relation '{request.relation}' are not supported")
        if kind in (RelationKind.MORPH_ONE, RelationKind.MORPH_MANY) and isinstance(owner, str):
            raise UnsupportedRelationError(
                f"Polymorphic relation '{request.relation}' needs an entity type owner, got table '{owner}'"
            )

        attribute = aggregate_attribute(request.relation, request.function, request.column)
        default = 0 if request.function == "count" else None

        keys = distinct_keys(parents, definition.owner_column)
        results: dict[Any, Any] = {}
        if keys:
            query = self._query(owner, request, definition, keys)
            rows = await query.fetch_rows()
            results = {row[GROUP_KEY]: row[AGGREGATE] for row in rows}

        for parent in parents:
            value = results.get(get_value(parent, definition.owner_column), default)
            if request.function == "count":
                value = int(value or 0)
            set_attribute(parent, attribute, value)

    def _query(
        self,
        owner: Owner,
        request: AggregateRequest,
        definition: RelationDefinition,
        keys: list[Any],
    ) -> QueryBuilder[Any]:
        kind = definition.kind
        table = definition.related_table
        query: QueryBuilder[Any] = QueryBuilder(self._executor, table, registry=self._registry)

        if kind is RelationKind.BELONGS_TO_MANY:
            pivot = definition.pivot_table
            group_column = f"{pivot}.{definition.foreign_pivot_key}"
            query.join(pivot, f"{pivot}.{definition.related_pivot_key}", "=", f"{table}.{definition.foreign_key}")  # type: ignore[arg-type]
        else:
            group_column = f"{table}.{definition.related_column}"

        query.select(
            f"{quote(group_column)} AS {quote(GROUP_KEY)}",
            f"{_aggregate_expression(request, table)} AS {quote(AGGREGATE)}",
        ).where_in(group_column, keys)

        if kind in (RelationKind.MORPH_ONE, RelationKind.MORPH_MANY):
            query.where(f"{table}.{definition.morph_type_field}", "=", self._registry.morph_type(owner))

        query.constrain(definition.constraint).constrain(request.constraint)

        return query.group_by(group_column)


def _aggregate_expression(request: AggregateRequest, table: str) -> str:
    if request.function == "count":
        return "COUNT(*)"

    column = request.column or "*"
    qualified = column if "." in column else f"{table}.{column}"
    return f"{request.function.upper()}({quote(qualified)})"

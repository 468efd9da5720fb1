from __future__ import annotations

import inspect
import sys
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final, Generic, Literal, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from .bindings import Binding
from .exceptions import UnsafeMutationError
from .existence import compile_has
from .pagination import (
    DEFAULT_PER_PAGE,
    CursorPaginatedResult,
    PaginatedResult,
    SimplePaginatedResult,
    last_page,
    page_offset,
)
from .parser import parse_relations
from .state import (
    AggregateFunction,
    AggregateRequest,
    Boolean,
    Fragment,
    JoinClause,
    LockMode,
    Predicate,
    QueryState,
    UnionClause,
    compile_predicates,
    where_bindings,
)
from .tools import check_operator, json_literal, json_path, placeholders, quote, quote_all


if TYPE_CHECKING:
    from .executor import StatementExecutor
    from .parser import RelationSpec
    from .relations import EntityFactory, Owner, RelationRegistry


T = TypeVar("T")
Callback = Callable[["QueryBuilder[Any]"], Any]
ChunkCallback = Callable[[list[T]], "Awaitable[bool | None] | bool | None"]

DEFAULT_CHUNK_SIZE: Final[int] = 100

_MISSING: Final[Any] = object()
_DIRECTIONS: Final[frozenset[str]] = frozenset({"ASC", "DESC"})
_FULL_TEXT_MODES: Final[dict[str, str]] = {
    "natural": "IN NATURAL LANGUAGE MODE",
    "boolean": "IN BOOLEAN MODE",
    "query_expansion": "WITH QUERY EXPANSION",
}


class QueryBuilder(Generic[T]):
    """Fluent SELECT/INSERT/UPDATE/DELETE builder over one table.

    Every clause method mutates the builder and returns it; terminal methods
    (``get``, ``first``, ``count``, ``paginate``, ``update``, ...) are
    coroutines that render the statement, send it through the
    :class:`~sqla_relquery.executor.StatementExecutor` and post-process the
    result.  ``get`` converts rows with the entity factory, eager-loads the
    requested relations and attaches relationship aggregates.

    A builder is a single-owner accumulator: hand a :meth:`clone` to any other
    task instead of the builder itself.

    Example::

        users = await (
            QueryBuilder.for_entity(executor, User, registry=registry)
            .where("active", "=", True)
            .where_has("posts", lambda q: q.where("published", "=", True))
            .with_relations("posts.comments", "profile")
            .with_count("posts")
            .latest()
            .get()
        )
    """

    __slots__ = ("_entity_type", "_executor", "_factory", "_registry", "_state")

    def __init__(
        self,
        executor: StatementExecutor,
        table: str,
        *,
        registry: RelationRegistry | None = None,
        factory: EntityFactory | None = None,
        entity_type: type | None = None,
    ) -> None:
        self._executor = executor
        self._registry = registry
        self._factory = factory
        self._entity_type = entity_type if entity_type is not None else _infer_entity_type(factory)
        self._state = QueryState(table)

    @classmethod
    def for_entity(
        cls,
        executor: StatementExecutor,
        entity_type: type[T],
        *,
        registry: RelationRegistry | None = None,
    ) -> QueryBuilder[T]:
        """Builder over ``entity_type.__tablename__`` producing ``entity_type`` instances."""
        table = getattr(entity_type, "__tablename__", None)
        if not table:
            raise ValueError(f"Cannot determine tablename for {entity_type!r}")

        return cls(
            executor,
            table,
            registry=registry,
            factory=getattr(entity_type, "from_row", entity_type),
            entity_type=entity_type,
        )

    def new_query(
        self,
        table: str,
        *,
        entity_type: type | None = None,
        factory: EntityFactory | None = None,
    ) -> QueryBuilder[Any]:
        """Fresh builder sharing this builder's executor and registry."""
        return QueryBuilder(
            self._executor,
            table,
            registry=self._registry,
            factory=factory,
            entity_type=entity_type,
        )

    @property
    def executor(self) -> StatementExecutor:
        return self._executor

    @property
    def registry(self) -> RelationRegistry | None:
        return self._registry

    @property
    def entity_type(self) -> type | None:
        return self._entity_type

    @property
    def table(self) -> str:
        return self._state.table

    @property
    def state(self) -> QueryState:
        return self._state

    @property
    def bindings(self) -> list[Binding]:
        """Bindings matching the placeholders of :meth:`to_sql`, in order."""
        return self._state.bindings()

    def to_sql(self) -> str:
        """Render the SELECT statement; never mutates the builder."""
        return self._state.to_sql()

    def clone(self) -> QueryBuilder[T]:
        """Independent copy: mutating it never affects this builder."""
        other: QueryBuilder[T] = QueryBuilder(
            self._executor,
            self._state.table,
            registry=self._registry,
            factory=self._factory,
            entity_type=self._entity_type,
        )
        other._state = self._state.clone()
        return other

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.to_sql()!r}>"

    # --- projection / source ---

    def select(self, *columns: str) -> Self:
        """Replace the projection; columns are emitted verbatim so expressions pass through."""
        self._state.columns = list(columns) or ["*"]
        return self

    def add_select(self, *columns: str) -> Self:
        if self._state.columns == ["*"]:
            self._state.columns = []
        self._state.columns.extend(columns)
        return self

    def distinct(self) -> Self:
        self._state.distinct = True
        return self

    def select_sub(self, query: QueryBuilder[Any] | Callback, alias: str) -> Self:
        """Append ``(subquery) AS `alias``` to the projection."""
        sub = self._subquery(query)
        self._state.select_subs.append(Fragment(f"({sub.to_sql()}) AS {quote(alias)}", tuple(sub.bindings)))
        return self

    def from_sub(self, query: QueryBuilder[Any] | Callback, alias: str) -> Self:
        """Select from ``(subquery) AS `alias``` instead of the table."""
        sub = self._subquery(query)
        self._state.source = Fragment(f"({sub.to_sql()}) AS {quote(alias)}", tuple(sub.bindings))
        self._state.source_alias = alias
        return self

    def from_raw(self, expression: str, bindings: Iterable[Any] = ()) -> Self:
        """Select from a verbatim FROM expression."""
        self._state.source = Fragment.of(expression, bindings)
        self._state.source_alias = None
        return self

    # --- WHERE ---

    def _add_where(self, sql: str, bindings: Iterable[Any] = (), boolean: Boolean = "AND") -> Self:
        # an OR on an empty predicate list degrades to a plain predicate
        if not self._state.wheres:
            boolean = "AND"
        elif boolean not in ("AND", "OR"):
            raise ValueError(f"Unsupported boolean connective {boolean!r}")

        fragment = Fragment.of(sql, bindings)
        self._state.wheres.append(Predicate(fragment.sql, fragment.bindings, boolean))
        return self

    def where(self, column: str, operator: Any = _MISSING, value: Any = _MISSING, boolean: Boolean = "AND") -> Self:
        """Add ``column operator ?``.

        ``where("status", "active")`` is shorthand for ``where("status", "=", "active")``;
        comparing to ``None`` with ``=`` or ``!=``/``<>`` becomes ``IS [NOT] NULL``.
        """
        if value is _MISSING:
            operator, value = "=", operator
        if value is _MISSING:
            raise TypeError("where() missing the value to compare against")

        operator = check_operator(operator)
        if value is None and operator in ("=", "!=", "<>"):
            return self.where_null(column, boolean=boolean, negate=operator != "=")

        return self._add_where(f"{quote(column)} {operator} ?", (value,), boolean)

    def or_where(self, column: str, operator: Any = _MISSING, value: Any = _MISSING) -> Self:
        return self.where(column, operator, value, boolean="OR")

    def where_raw(self, sql: str, bindings: Iterable[Any] = (), boolean: Boolean = "AND") -> Self:
        return self._add_where(sql, bindings, boolean)

    def or_where_raw(self, sql: str, bindings: Iterable[Any] = ()) -> Self:
        return self._add_where(sql, bindings, "OR")

    def where_in(self, column: str, values: Iterable[Any], boolean: Boolean = "AND", *, negate: bool = False) -> Self:
        """``column IN (?, ...)``; an empty *values* adds nothing."""
        values = list(values)
        if not values:
            return self

        keyword = "NOT IN" if negate else "IN"
        return self._add_where(f"{quote(column)} {keyword} ({placeholders(len(values))})", values, boolean)

    def or_where_in(self, column: str, values: Iterable[Any]) -> Self:
        return self.where_in(column, values, "OR")

    def where_not_in(self, column: str, values: Iterable[Any], boolean: Boolean = "AND") -> Self:
        return self.where_in(column, values, boolean, negate=True)

    def or_where_not_in(self, column: str, values: Iterable[Any]) -> Self:
        return self.where_in(column, values, "OR", negate=True)

    def where_null(self, column: str, boolean: Boolean = "AND", *, negate: bool = False) -> Self:
        return self._add_where(f"{quote(column)} IS {'NOT ' if negate else ''}NULL", (), boolean)

    def or_where_null(self, column: str) -> Self:
        return self.where_null(column, "OR")

    def where_not_null(self, column: str, boolean: Boolean = "AND") -> Self:
        return self.where_null(column, boolean, negate=True)

    def or_where_not_null(self, column: str) -> Self:
        return self.where_null(column, "OR", negate=True)

    def where_between(
        self,
        column: str,
        low: Any,
        high: Any,
        boolean: Boolean = "AND",
        *,
        negate: bool = False,
    ) -> Self:
        keyword = "NOT BETWEEN" if negate else "BETWEEN"
        return self._add_where(f"{quote(column)} {keyword} ? AND ?", (low, high), boolean)

    def or_where_between(self, column: str, low: Any, high: Any) -> Self:
        return self.where_between(column, low, high, "OR")

    def where_not_between(self, column: str, low: Any, high: Any, boolean: Boolean = "AND") -> Self:
        return self.where_between(column, low, high, boolean, negate=True)

    def or_where_not_between(self, column: str, low: Any, high: Any) -> Self:
        return self.where_between(column, low, high, "OR", negate=True)

    def where_between_columns(
        self,
        column: str,
        low_column: str,
        high_column: str,
        boolean: Boolean = "AND",
        *,
        negate: bool = False,
    ) -> Self:
        keyword = "NOT BETWEEN" if negate else "BETWEEN"
        return self._add_where(f"{quote(column)} {keyword} {quote(low_column)} AND {quote(high_column)}", (), boolean)

    def or_where_between_columns(self, column: str, low_column: str, high_column: str) -> Self:
        return self.where_between_columns(column, low_column, high_column, "OR")

    def where_not_between_columns(
        self, column: str, low_column: str, high_column: str, boolean: Boolean = "AND"
    ) -> Self:
        return self.where_between_columns(column, low_column, high_column, boolean, negate=True)

    def where_like(self, column: str, pattern: str, boolean: Boolean = "AND", *, negate: bool = False) -> Self:
        return self._add_where(f"{quote(column)} {'NOT LIKE' if negate else 'LIKE'} ?", (pattern,), boolean)

    def or_where_like(self, column: str, pattern: str) -> Self:
        return self.where_like(column, pattern, "OR")

    def where_not_like(self, column: str, pattern: str, boolean: Boolean = "AND") -> Self:
        return self.where_like(column, pattern, boolean, negate=True)

    def or_where_not_like(self, column: str, pattern: str) -> Self:
        return self.where_like(column, pattern, "OR", negate=True)

    # temporal helpers: ``FUNC(`column`) op ?``

    def _where_function(self, function: str, column: str, value: Any, operator: str, boolean: Boolean) -> Self:
        return self._add_where(f"{function}({quote(column)}) {check_operator(operator)} ?", (value,), boolean)

    def where_date(self, column: str, value: Any, operator: str = "=", boolean: Boolean = "AND") -> Self:
        return self._where_function("DATE", column, value, operator, boolean)

    def or_where_date(self, column: str, value: Any, operator: str = "=") -> Self:
        return self._where_function("DATE", column, value, operator, "OR")

    def where_time(self, column: str, value: Any, operator: str = "=", boolean: Boolean = "AND") -> Self:
        return self._where_function("TIME", column, value, operator, boolean)

    def or_where_time(self, column: str, value: Any, operator: str = "=") -> Self:
        return self._where_function("TIME", column, value, operator, "OR")

    def where_year(self, column: str, value: Any, operator: str = "=", boolean: Boolean = "AND") -> Self:
        return self._where_function("YEAR", column, value, operator, boolean)

    def or_where_year(self, column: str, value: Any, operator: str = "=") -> Self:
        return self._where_function("YEAR", column, value, operator, "OR")

    def where_month(self, column: str, value: Any, operator: str = "=", boolean: Boolean = "AND") -> Self:
        return self._where_function("MONTH", column, value, operator, boolean)

    def or_where_month(self, column: str, value: Any, operator: str = "=") -> Self:
        return self._where_function("MONTH", column, value, operator, "OR")

    def where_day(self, column: str, value: Any, operator: str = "=", boolean: Boolean = "AND") -> Self:
        return self._where_function("DAY", column, value, operator, boolean)

    def or_where_day(self, column: str, value: Any, operator: str = "=") -> Self:
        return self._where_function("DAY", column, value, operator, "OR")

    def where_past(self, column: str, boolean: Boolean = "AND") -> Self:
        return self._add_where(f"{quote(column)} < NOW()", (), boolean)

    def or_where_past(self, column: str) -> Self:
        return self.where_past(column, "OR")

    def where_future(self, column: str, boolean: Boolean = "AND") -> Self:
        return self._add_where(f"{quote(column)} > NOW()", (), boolean)

    def or_where_future(self, column: str) -> Self:
        return self.where_future(column, "OR")

    def where_today(self, column: str, boolean: Boolean = "AND") -> Self:
        return self._add_where(f"DATE({quote(column)}) = CURDATE()", (), boolean)

    def or_where_today(self, column: str) -> Self:
        return self.where_today(column, "OR")

    def where_before_today(self, column: str, boolean: Boolean = "AND") -> Self:
        return self._add_where(f"DATE({quote(column)}) < CURDATE()", (), boolean)

    def where_after_today(self, column: str, boolean: Boolean = "AND") -> Self:
        return self._add_where(f"DATE({quote(column)}) > CURDATE()", (), boolean)

    def where_column(self, first: str, operator: str, second: str, boolean: Boolean = "AND") -> Self:
        """Compare two columns; adds no binding."""
        return self._add_where(f"{quote(first)} {check_operator(operator)} {quote(second)}", (), boolean)

    def or_where_column(self, first: str, operator: str, second: str) -> Self:
        return self.where_column(first, operator, second, "OR")

    # JSON helpers

    def where_json_contains(
        self,
        column: str,
        value: Any,
        path: str | None = None,
        boolean: Boolean = "AND",
        *,
        negate: bool = False,
    ) -> Self:
        """``JSON_CONTAINS(`column`, ?[, ?])`` with *value* serialized to a JSON literal."""
        prefix = "NOT " if negate else ""
        if path is None:
            return self._add_where(f"{prefix}JSON_CONTAINS({quote(column)}, ?)", (json_literal(value),), boolean)

        return self._add_where(
            f"{prefix}JSON_CONTAINS({quote(column)}, ?, ?)",
            (json_literal(value), json_path(path)),
            boolean,
        )

    def or_where_json_contains(self, column: str, value: Any, path: str | None = None) -> Self:
        return self.where_json_contains(column, value, path, "OR")

    def where_json_doesnt_contain(
        self, column: str, value: Any, path: str | None = None, boolean: Boolean = "AND"
    ) -> Self:
        return self.where_json_contains(column, value, path, boolean, negate=True)

    def or_where_json_doesnt_contain(self, column: str, value: Any, path: str | None = None) -> Self:
        return self.where_json_contains(column, value, path, "OR", negate=True)

    def where_json_length(
        self,
        column: str,
        operator: str,
        length: int,
        path: str | None = None,
        boolean: Boolean = "AND",
    ) -> Self:
        operator = check_operator(operator)
        if path is None:
            return self._add_where(f"JSON_LENGTH({quote(column)}) {operator} ?", (length,), boolean)

        return self._add_where(f"JSON_LENGTH({quote(column)}, ?) {operator} ?", (json_path(path), length), boolean)

    def or_where_json_length(self, column: str, operator: str, length: int, path: str | None = None) -> Self:
        return self.where_json_length(column, operator, length, path, "OR")

    def where_json_contains_key(self, column: str, path: str, boolean: Boolean = "AND") -> Self:
        return self._add_where(f"JSON_CONTAINS_PATH({quote(column)}, 'one', ?)", (json_path(path),), boolean)

    def or_where_json_contains_key(self, column: str, path: str) -> Self:
        return self.where_json_contains_key(column, path, "OR")

    # multi-column sugar

    def where_any(self, columns: Sequence[str], operator: str, value: Any, boolean: Boolean = "AND") -> Self:
        """``(`a` op ? OR `b` op ?)``: one binding per column."""
        if not columns:
            return self

        operator = check_operator(operator)
        group = " OR ".join(f"{quote(column)} {operator} ?" for column in columns)
        return self._add_where(f"({group})", [value] * len(columns), boolean)

    def or_where_any(self, columns: Sequence[str], operator: str, value: Any) -> Self:
        return self.where_any(columns, operator, value, "OR")

    def where_all(self, conditions: Mapping[str, Any]) -> Self:
        """One ``AND``-ed equality predicate per ``column: value`` pair."""
        for column, value in conditions.items():
            self.where(column, "=", value)
        return self

    def where_none(self, conditions: Mapping[str, Any], boolean: Boolean = "AND") -> Self:
        """``NOT (`a` = ? OR `b` = ?)``."""
        if not conditions:
            return self

        group = " OR ".join(f"{quote(column)} = ?" for column in conditions)
        return self._add_where(f"NOT ({group})", conditions.values(), boolean)

    def where_full_text(
        self,
        columns: str | Sequence[str],
        term: str,
        mode: Literal["natural", "boolean", "query_expansion"] = "natural",
        boolean: Boolean = "AND",
    ) -> Self:
        columns = [columns] if isinstance(columns, str) else columns
        modifier = _FULL_TEXT_MODES.get(mode, _FULL_TEXT_MODES["natural"])
        return self._add_where(f"MATCH ({quote_all(columns)}) AGAINST (? {modifier})", (term,), boolean)

    def or_where_full_text(
        self,
        columns: str | Sequence[str],
        term: str,
        mode: Literal["natural", "boolean", "query_expansion"] = "natural",
    ) -> Self:
        return self.where_full_text(columns, term, mode, "OR")

    # grouping and subqueries

    def where_nested(self, callback: Callback, boolean: Boolean = "AND") -> Self:
        """Run *callback* against an isolated builder and fold its predicates into ``( ... )``.

        Nothing is added when the callback leaves the isolated builder empty.
        """
        nested = self.new_query(self._state.table, entity_type=self._entity_type)
        nested._state.source_alias = self._state.source_alias
        callback(nested)
        if not nested._state.wheres:
            return self

        group = nested._state
        return self._add_where(f"({compile_predicates(group.wheres)})", where_bindings(group.wheres), boolean)

    def or_where_nested(self, callback: Callback) -> Self:
        return self.where_nested(callback, "OR")

    def constrain(self, callback: Callback | None) -> Self:
        """Run *callback* on this builder and wrap the predicates it adds in ``( ... )``.

        Unlike :meth:`where_nested` the callback acts on this builder, so
        orders, limits and joins it sets are kept. An ``or_where`` inside the
        callback stays inside the group.
        """
        if callback is None:
            return self

        start = len(self._state.wheres)
        callback(self)
        added = self._state.wheres[start:]
        if not added:
            return self

        del self._state.wheres[start:]
        return self._add_where(f"({compile_predicates(added)})", where_bindings(added))

    def where_in_subquery(
        self,
        column: str,
        query: QueryBuilder[Any] | Callback,
        boolean: Boolean = "AND",
        *,
        negate: bool = False,
    ) -> Self:
        sub = self._subquery(query)
        keyword = "NOT IN" if negate else "IN"
        return self._add_where(f"{quote(column)} {keyword} ({sub.to_sql()})", sub.bindings, boolean)

    def or_where_in_subquery(self, column: str, query: QueryBuilder[Any] | Callback) -> Self:
        return self.where_in_subquery(column, query, "OR")

    def where_not_in_subquery(
        self, column: str, query: QueryBuilder[Any] | Callback, boolean: Boolean = "AND"
    ) -> Self:
        return self.where_in_subquery(column, query, boolean, negate=True)

    def where_exists(
        self,
        query: QueryBuilder[Any] | Callback,
        boolean: Boolean = "AND",
        *,
        negate: bool = False,
    ) -> Self:
        sub = self._subquery(query)
        return self._add_where(f"{'NOT ' if negate else ''}EXISTS ({sub.to_sql()})", sub.bindings, boolean)

    def or_where_exists(self, query: QueryBuilder[Any] | Callback) -> Self:
        return self.where_exists(query, "OR")

    def where_not_exists(self, query: QueryBuilder[Any] | Callback, boolean: Boolean = "AND") -> Self:
        return self.where_exists(query, boolean, negate=True)

    def or_where_not_exists(self, query: QueryBuilder[Any] | Callback) -> Self:
        return self.where_exists(query, "OR", negate=True)

    def _subquery(self, query: QueryBuilder[Any] | Callback) -> QueryBuilder[Any]:
        # a callback receives a fresh builder over this builder's table
        if isinstance(query, QueryBuilder):
            return query

        sub = self.new_query(self._state.table)
        query(sub)
        return sub

    # relationship existence

    def where_has(
        self,
        relation: str,
        callback: Callback | None = None,
        operator: str = ">=",
        count: int = 1,
        boolean: Boolean = "AND",
    ) -> Self:
        """Keep rows with at least (``operator``) *count* related rows.

        Renders ``(SELECT COUNT(*) FROM related WHERE related.fk = outer.key
        [AND ...]) >= ?``.  Dotted paths (``"posts.comments"``) nest one
        correlated subquery per segment.

        Raises:
            RelationNotFoundError: If a path segment is not declared.
            UnsupportedRelationError: For ``belongsToMany`` and polymorphic
                relations.
        """
        predicate = compile_has(self, relation, callback, operator, count)
        return self._add_where(predicate.sql, predicate.bindings, boolean)

    def or_where_has(
        self,
        relation: str,
        callback: Callback | None = None,
        operator: str = ">=",
        count: int = 1,
    ) -> Self:
        return self.where_has(relation, callback, operator, count, "OR")

    def where_doesnt_have(self, relation: str, callback: Callback | None = None, boolean: Boolean = "AND") -> Self:
        """``NOT EXISTS (SELECT 1 FROM related WHERE related.fk = outer.key [AND ...] LIMIT 1)``."""
        predicate = compile_has(self, relation, callback, negate=True)
        return self._add_where(predicate.sql, predicate.bindings, boolean)

    def or_where_doesnt_have(self, relation: str, callback: Callback | None = None) -> Self:
        return self.where_doesnt_have(relation, callback, "OR")

    def has(self, relation: str, operator: str = ">=", count: int = 1) -> Self:
        return self.where_has(relation, None, operator, count)

    def doesnt_have(self, relation: str) -> Self:
        return self.where_doesnt_have(relation)

    # --- joins / unions ---

    def join(self, table: str, first: str, operator: str, second: str) -> Self:
        self._state.joins.append(JoinClause("INNER", table, first, check_operator(operator), second))
        return self

    def left_join(self, table: str, first: str, operator: str, second: str) -> Self:
        self._state.joins.append(JoinClause("LEFT", table, first, check_operator(operator), second))
        return self

    def right_join(self, table: str, first: str, operator: str, second: str) -> Self:
        self._state.joins.append(JoinClause("RIGHT", table, first, check_operator(operator), second))
        return self

    def cross_join(self, table: str) -> Self:
        self._state.joins.append(JoinClause("CROSS", table))
        return self

    def union(self, query: QueryBuilder[Any], *, all: bool = False) -> Self:  # noqa: A002
        """Append ``UNION [ALL] (query)`` after every other clause."""
        self._state.unions.append(UnionClause(Fragment(query.to_sql(), tuple(query.bindings)), all=all))
        return self

    def union_all(self, query: QueryBuilder[Any]) -> Self:
        return self.union(query, all=True)

    # --- grouping / ordering / paging / locking ---

    def group_by(self, *columns: str) -> Self:
        self._state.groups.extend(columns)
        return self

    def having(self, column: str, operator: str, value: Any, boolean: Boolean = "AND") -> Self:
        return self._add_having(f"{quote(column)} {check_operator(operator)} ?", (value,), boolean)

    def having_raw(self, sql: str, bindings: Iterable[Any] = (), boolean: Boolean = "AND") -> Self:
        return self._add_having(sql, bindings, boolean)

    def _add_having(self, sql: str, bindings: Iterable[Any], boolean: Boolean) -> Self:
        fragment = Fragment.of(sql, bindings)
        self._state.havings.append(
            Predicate(fragment.sql, fragment.bindings, boolean if self._state.havings else "AND")
        )
        return self

    def order_by(self, column: str, direction: str = "asc") -> Self:
        normalized = direction.upper()
        if normalized not in _DIRECTIONS:
            raise ValueError(f"Order direction must be 'asc' or 'desc', got {direction!r}")

        self._state.orders.append(f"{quote(column)} {normalized}")
        return self

    def order_by_desc(self, column: str) -> Self:
        return self.order_by(column, "desc")

    def latest(self, column: str = "created_at") -> Self:
        return self.order_by(column, "desc")

    def oldest(self, column: str = "created_at") -> Self:
        return self.order_by(column, "asc")

    def in_random_order(self) -> Self:
        self._state.orders = ["RAND()"]
        return self

    def reorder(self, column: str | None = None, direction: str = "asc") -> Self:
        """Drop existing orderings, optionally replacing them with one new ordering."""
        self._state.orders = []
        return self.order_by(column, direction) if column is not None else self

    def limit(self, value: int | None) -> Self:
        if value is not None and value < 0:
            raise ValueError(f"limit must be non-negative, got {value}")

        self._state.limit = value
        return self

    def offset(self, value: int | None) -> Self:
        if value is not None and value < 0:
            raise ValueError(f"offset must be non-negative, got {value}")

        self._state.offset = value
        return self

    def for_page(self, page: int, per_page: int = DEFAULT_PER_PAGE) -> Self:
        return self.offset(page_offset(page, per_page)).limit(per_page)

    def shared_lock(self) -> Self:
        self._state.lock = LockMode.SHARED
        return self

    def lock_for_update(self) -> Self:
        self._state.lock = LockMode.EXCLUSIVE
        return self

    def when(self, condition: Any, callback: Callback, default: Callback | None = None) -> Self:
        """Apply *callback* only if *condition* is truthy (else *default*, if given)."""
        if condition:
            callback(self)
        elif default is not None:
            default(self)
        return self

    # --- eager loading / aggregates ---

    def with_relations(self, *specs: RelationSpec | Sequence[RelationSpec]) -> Self:
        """Request relations to eager-load on ``get()``; accepts strings and mappings, or lists of them."""
        self._state.relations.extend(_flatten_specs(specs))
        return self

    def without(self, *names: str) -> Self:
        """Exclude entity-declared default relations by name."""
        self._state.excluded.update(names)
        return self

    def with_only(self, *specs: RelationSpec | Sequence[RelationSpec]) -> Self:
        """Load exactly *specs*, ignoring entity-declared defaults."""
        self._state.only = True
        self._state.relations = _flatten_specs(specs)
        return self

    def with_aggregate(
        self,
        relation: str,
        function: AggregateFunction,
        column: str | None = None,
        constraint: Callback | None = None,
    ) -> Self:
        self._state.aggregates.append(AggregateRequest(function, relation, column, constraint))
        return self

    def with_count(self, relation: str, constraint: Callback | None = None) -> Self:
        """Attach ``{relation}Count`` to every fetched entity."""
        return self.with_aggregate(relation, "count", None, constraint)

    def with_sum(self, relation: str, column: str, constraint: Callback | None = None) -> Self:
        return self.with_aggregate(relation, "sum", column, constraint)

    def with_avg(self, relation: str, column: str, constraint: Callback | None = None) -> Self:
        return self.with_aggregate(relation, "avg", column, constraint)

    def with_max(self, relation: str, column: str, constraint: Callback | None = None) -> Self:
        return self.with_aggregate(relation, "max", column, constraint)

    def with_min(self, relation: str, column: str, constraint: Callback | None = None) -> Self:
        return self.with_aggregate(relation, "min", column, constraint)

    def eager_relations(self) -> list[RelationSpec]:
        """Entity defaults (minus exclusions, unless ``with_only``) followed by explicit relations."""
        state = self._state
        defaults: list[RelationSpec] = []
        if not state.only and self._entity_type is not None:
            declared = getattr(self._entity_type, "default_relations", ())
            if declared:
                defaults.extend(meta for meta in parse_relations(declared) if meta.key not in state.excluded)

        return [*defaults, *state.relations]

    # --- execution ---

    async def _run(self, sql: str, bindings: Sequence[Binding]) -> Any:
        return await self._executor.execute(sql, bindings)

    async def fetch_rows(self) -> list[Mapping[str, Any]]:
        result = await self._run(self.to_sql(), self.bindings)
        return list(result.rows)

    async def get(self) -> list[T]:
        """Fetch all matching rows as entities, with relations and aggregates attached."""
        rows = await self.fetch_rows()
        factory = self._factory
        items: list[Any] = [factory(row) for row in rows] if factory is not None else [dict(row) for row in rows]
        if not items:
            return items

        # deferred: loader and attacher build their queries with QueryBuilder
        from .aggregates import AggregateAttacher
        from .loader import EagerLoader

        if relations := self.eager_relations():
            await EagerLoader(self._executor, self._registry).load(items, relations, owner=self._owner)

        if self._state.aggregates:
            await AggregateAttacher(self._executor, self._registry).attach(
                items, self._state.aggregates, owner=self._owner
            )

        return items

    @property
    def _owner(self) -> Owner:
        return self._entity_type or self._state.table

    async def first(self) -> T | None:
        items = await self.limit(1).get()
        return items[0] if items else None

    async def find(self, value: Any, column: str = "id") -> T | None:
        return await self.where(column, "=", value).first()

    async def pluck(self, column: str) -> list[Any]:
        """Values of one column for every matching row (no entity conversion)."""
        query = self.clone()
        query._state.columns = [quote(column)]
        query._state.select_subs = []
        key = column.rsplit(".", 1)[-1]
        return [row[key] for row in await query.fetch_rows()]

    async def exists(self) -> bool:
        result = await self._run(f"SELECT EXISTS({self.to_sql()}) AS {quote('exists')}", self.bindings)
        return bool(result.rows and _first_value(result.rows[0]))

    async def doesnt_exist(self) -> bool:
        return not await self.exists()

    async def _aggregate(self, function: str, column: str) -> Any:
        # destructive: the projection is replaced for good
        expression = column if column == "*" else quote(column)
        self._state.columns = [f"{function}({expression}) AS {quote('aggregate')}"]
        self._state.select_subs = []
        rows = await self.fetch_rows()
        return rows[0]["aggregate"] if rows else None

    async def count(self, column: str = "*") -> int:
        """``COUNT(column)``; replaces the projection, so ``clone()`` first to keep it."""
        return int(await self._aggregate("COUNT", column) or 0)

    async def sum(self, column: str) -> Any:
        value = await self._aggregate("SUM", column)
        return 0 if value is None else value

    async def avg(self, column: str) -> Any:
        value = await self._aggregate("AVG", column)
        return 0 if value is None else value

    async def max(self, column: str) -> Any:
        return await self._aggregate("MAX", column)

    async def min(self, column: str) -> Any:
        return await self._aggregate("MIN", column)

    async def paginate(self, per_page: int = DEFAULT_PER_PAGE, page: int = 1) -> PaginatedResult[T]:
        """Offset pagination: a COUNT on a clone, then this page's rows."""
        offset = page_offset(page, per_page)
        total = await self.clone().count()
        items = await self.offset(offset).limit(per_page).get()
        return PaginatedResult(
            data=items,
            total=total,
            per_page=per_page,
            current_page=page,
            last_page=last_page(total, per_page),
        )

    async def simple_paginate(self, per_page: int = DEFAULT_PER_PAGE, page: int = 1) -> SimplePaginatedResult[T]:
        """Pagination without a COUNT: fetch one extra row to detect a next page."""
        offset = page_offset(page, per_page)
        items = await self.clone().offset(offset).limit(per_page + 1).get()
        has_more = len(items) > per_page
        data = items[:per_page]
        return SimplePaginatedResult(
            data=data,
            per_page=per_page,
            current_page=page,
            has_more_pages=has_more,
            from_=offset + 1 if data else None,
            to=offset + len(data) if data else None,
        )

    async def cursor_paginate(
        self,
        per_page: int = DEFAULT_PER_PAGE,
        cursor: Any = None,
        column: str = "id",
    ) -> CursorPaginatedResult[T]:
        """Keyset pagination over *column* ascending, starting after *cursor*."""
        if per_page < 1:
            raise ValueError(f"per_page must be positive, got {per_page}")

        query = self.clone()
        if cursor is not None:
            query.where(column, ">", cursor)
        items = await query.reorder(column).limit(per_page + 1).get()
        has_more = len(items) > per_page
        data = items[:per_page]
        return CursorPaginatedResult(
            data=data,
            per_page=per_page,
            next_cursor=_value_of(data[-1], column.rsplit(".", 1)[-1]) if has_more and data else None,
            previous_cursor=cursor,
            has_more=has_more,
        )

    async def chunk(self, size: int, callback: ChunkCallback[T]) -> None:
        """Feed *callback* successive pages of *size* items until a short page or ``False``."""
        if size < 1:
            raise ValueError(f"chunk size must be positive, got {size}")

        page = 1
        while True:
            items = await self.clone().offset((page - 1) * size).limit(size).get()
            if not items:
                return

            if await _maybe_await(callback(items)) is False or len(items) < size:
                return

            page += 1

    async def chunk_by_id(
        self,
        size: int,
        callback: ChunkCallback[T],
        column: str = "id",
        alias: str | None = None,
    ) -> None:
        """Like :meth:`chunk`, paging on ``column > last seen`` instead of OFFSET."""
        if size < 1:
            raise ValueError(f"chunk size must be positive, got {size}")

        last: Any = None
        while True:
            query = self.clone()
            if last is not None:
                query.where(column, ">", last)
            items = await query.reorder(column).limit(size).get()
            if not items:
                return

            if await _maybe_await(callback(items)) is False or len(items) < size:
                return

            last = _value_of(items[-1], alias or column.rsplit(".", 1)[-1])

    async def lazy(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[T]:
        """Iterate every matching item, fetching *chunk_size* rows at a time."""
        if chunk_size < 1:
            raise ValueError(f"chunk size must be positive, got {chunk_size}")

        page = 1
        while True:
            items = await self.clone().offset((page - 1) * chunk_size).limit(chunk_size).get()
            for item in items:
                yield item

            if len(items) < chunk_size:
                return

            page += 1

    # --- writes ---

    async def insert(self, values: Mapping[str, Any]) -> int | None:
        """Insert one row; returns the generated id when the driver reports one."""
        if not values:
            raise ValueError("Cannot insert an empty row")

        statement = self._state.compile_insert(list(values), [list(values.values())])
        result = await self._run(statement.sql, statement.bindings)
        return result.insert_id

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> list[int]:
        """Insert all *rows* in one statement.

        Returns consecutive ids counted from the first generated id, or an
        empty list when the driver reports none.
        """
        if not rows:
            return []

        columns, values = _row_matrix(rows)
        statement = self._state.compile_insert(columns, values)
        result = await self._run(statement.sql, statement.bindings)
        if result.insert_id is None:
            return []

        return [result.insert_id + index for index in range(len(rows))]

    async def upsert(
        self,
        rows: Sequence[Mapping[str, Any]],
        unique_by: Sequence[str],
        update: Sequence[str] | None = None,
    ) -> int:
        """Insert *rows*, updating *update* (default: every non-key column) on a duplicate key."""
        if not rows:
            return 0

        columns, values = _row_matrix(rows)
        statement = self._state.compile_upsert(columns, values, unique_by, update)
        result = await self._run(statement.sql, statement.bindings)
        return result.affected_rows or 0

    def _guard(self, operation: str) -> None:
        if not self._state.wheres:
            raise UnsafeMutationError(operation, self._state.table)

    async def _execute_update(self, operation: str, assignments: Sequence[Fragment]) -> int:
        self._guard(operation)
        statement = self._state.compile_update(assignments)
        result = await self._run(statement.sql, statement.bindings)
        return result.affected_rows or 0

    async def update(self, values: Mapping[str, Any]) -> int:
        """Update matching rows; refuses to run without a WHERE predicate.

        Raises:
            UnsafeMutationError: If no predicate has been added.
        """
        self._guard("update")
        if not values:
            raise ValueError("Cannot update with an empty set of values")

        return await self._execute_update(
            "update", [Fragment.of(f"{quote(column)} = ?", (value,)) for column, value in values.items()]
        )

    async def increment(self, column: str, amount: int | float = 1) -> int:
        return await self._execute_update("increment", [_step(column, "+", amount)])

    async def decrement(self, column: str, amount: int | float = 1) -> int:
        return await self._execute_update("decrement", [_step(column, "-", amount)])

    async def increment_each(self, columns: Mapping[str, int | float]) -> int:
        self._guard("incrementEach")
        if not columns:
            raise ValueError("increment_each() needs at least one column")

        return await self._execute_update(
            "incrementEach", [_step(column, "+", amount) for column, amount in columns.items()]
        )

    async def delete(self) -> int:
        """Delete matching rows; refuses to run without a WHERE predicate.

        Raises:
            UnsafeMutationError: If no predicate has been added.
        """
        self._guard("delete")
        statement = self._state.compile_delete()
        result = await self._run(statement.sql, statement.bindings)
        return result.affected_rows or 0


def _infer_entity_type(factory: EntityFactory | None) -> type | None:
    if isinstance(factory, type):
        return factory

    owner = getattr(factory, "__self__", None)
    return owner if isinstance(owner, type) else None


def _flatten_specs(specs: Iterable[Any]) -> list[RelationSpec]:
    out: list[RelationSpec] = []
    for spec in specs:
        if isinstance(spec, (list, tuple)):
            out.extend(spec)
        else:
            out.append(spec)
    return out


def _row_matrix(rows: Sequence[Mapping[str, Any]]) -> tuple[list[str], list[list[Any]]]:
    columns = list(rows[0])
    expected = set(columns)
    for index, row in enumerate(rows):
        if set(row) != expected:
            raise ValueError(f"Row {index} has columns {sorted(row)}, expected {sorted(columns)}")

    return columns, [[row[column] for column in columns] for row in rows]


def _step(column: str, sign: str, amount: int | float) -> Fragment:
    return Fragment.of(f"{quote(column)} = {quote(column)} {sign} ?", (amount,))


def _value_of(item: Any, column: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(column)

    return item.get_attribute(column)


def _first_value(row: Mapping[str, Any]) -> Any:
    return next(iter(row.values()), None)


async def _maybe_await(value: Any) -> Any:
    return await value if inspect.isawaitable(value) else value

from __future__ import annotations

import enum
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Final, Literal

from .bindings import Binding, to_bindings
from .tools import placeholders, quote, quote_all


if TYPE_CHECKING:
    from .parser import RelationSpec


Boolean = Literal["AND", "OR"]
AggregateFunction = Literal["count", "sum", "avg", "max", "min"]

AGGREGATE_FUNCTIONS: Final[frozenset[str]] = frozenset({"count", "sum", "avg", "max", "min"})


class LockMode(str, enum.Enum):
    NONE = ""
    SHARED = "FOR SHARE"
    EXCLUSIVE = "FOR UPDATE"


@dataclass(frozen=True, slots=True)
class Fragment:
    """Rendered SQL text together with the bindings its placeholders consume."""

    sql: str
    bindings: tuple[Binding, ...] = ()

    @classmethod
    def of(cls, sql: str, bindings: Iterable[Any] = ()) -> Fragment:
        return cls(sql, tuple(to_bindings(bindings)))


@dataclass(frozen=True, slots=True)
class Predicate:
    """One WHERE/HAVING condition and the connective joining it to the previous one."""

    sql: str
    bindings: tuple[Binding, ...] = ()
    boolean: Boolean = "AND"


@dataclass(frozen=True, slots=True)
class JoinClause:
    kind: Literal["INNER", "LEFT", "RIGHT", "CROSS"]
    table: str
    first: str | None = None
    operator: str | None = None
    second: str | None = None

    def render(self) -> str:
        if self.kind == "CROSS":
            return f"CROSS JOIN {quote(self.table)}"

        return f"{self.kind} JOIN {quote(self.table)} ON {quote(self.first)} {self.operator} {quote(self.second)}"  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class UnionClause:
    query: Fragment
    all: bool = False

    def render(self) -> str:
        return f"UNION ALL ({self.query.sql})" if self.all else f"UNION ({self.query.sql})"


@dataclass(frozen=True, slots=True)
class AggregateRequest:
    """Relationship aggregate to attach to every fetched entity."""

    function: AggregateFunction
    relation: str
    column: str | None = None
    constraint: Callable[[Any], Any] | None = None

    def __post_init__(self) -> None:
        if self.function not in AGGREGATE_FUNCTIONS:
            raise ValueError(f"Unsupported aggregate function {self.function!r}")

        if self.function != "count" and not self.column:
            raise ValueError(f"Aggregate {self.function!r} on '{self.relation}' requires a column")


@dataclass(slots=True)
class QueryState:
    """Everything one :class:`~sqla_relquery.builder.QueryBuilder` has accumulated.

    The state is owned by a single builder; share it across tasks only through
    :meth:`clone`.
    """

    table: str
    columns: list[str] = field(default_factory=lambda: ["*"])
    distinct: bool = False
    wheres: list[Predicate] = field(default_factory=list)
    joins: list[JoinClause] = field(default_factory=list)
    unions: list[UnionClause] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)
    havings: list[Predicate] = field(default_factory=list)
    orders: list[str] = field(default_factory=list)
    limit: int | None = None
    offset: int | None = None
    lock: LockMode = LockMode.NONE
    source: Fragment | None = None
    source_alias: str | None = None
    select_subs: list[Fragment] = field(default_factory=list)
    relations: list[RelationSpec] = field(default_factory=list)
    excluded: set[str] = field(default_factory=set)
    only: bool = False
    aggregates: list[AggregateRequest] = field(default_factory=list)

    def clone(self) -> QueryState:
        """Copy with every mutable sequence duplicated; clauses themselves are immutable."""
        return replace(
            self,
            columns=list(self.columns),
            wheres=list(self.wheres),
            joins=list(self.joins),
            unions=list(self.unions),
            groups=list(self.groups),
            havings=list(self.havings),
            orders=list(self.orders),
            select_subs=list(self.select_subs),
            relations=list(self.relations),
            excluded=set(self.excluded),
            aggregates=list(self.aggregates),
        )

    @property
    def alias(self) -> str:
        """Name the outer query's rows are addressed by in correlated subqueries."""
        return self.source_alias or self.table

    # --- rendering ---

    def to_sql(self) -> str:
        parts = [self._compile_select(), f"FROM {self.source.sql if self.source else quote(self.table)}"]
        parts.extend(join.render() for join in self.joins)
        if self.wheres:
            parts.append(f"WHERE {compile_predicates(self.wheres)}")
        if self.groups:
            parts.append(f"GROUP BY {quote_all(self.groups)}")
        if self.havings:
            parts.append(f"HAVING {compile_predicates(self.havings)}")
        if self.orders:
            parts.append(f"ORDER BY {', '.join(self.orders)}")
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        if self.offset is not None:
            parts.append(f"OFFSET {self.offset}")
        if self.lock is not LockMode.NONE:
            parts.append(self.lock.value)
        parts.extend(union.render() for union in self.unions)
        return " ".join(parts)

    def bindings(self) -> list[Binding]:
        """Bindings in the order their placeholders appear in :meth:`to_sql`."""
        out: list[Binding] = []
        for sub in self.select_subs:
            out.extend(sub.bindings)
        if self.source is not None:
            out.extend(self.source.bindings)
        out.extend(where_bindings(self.wheres))
        out.extend(where_bindings(self.havings))
        for union in self.unions:
            out.extend(union.query.bindings)
        return out

    def _compile_select(self) -> str:
        projection = list(self.columns)
        projection.extend(sub.sql for sub in self.select_subs)
        return f"SELECT {'DISTINCT ' if self.distinct else ''}{', '.join(projection)}"

    def compile_insert(self, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> Fragment:
        values = ", ".join(f"({placeholders(len(columns))})" for _ in rows)
        return Fragment.of(
            f"INSERT INTO {quote(self.table)} ({quote_all(columns)}) VALUES {values}",
            (value for row in rows for value in row),
        )

    def compile_upsert(
        self,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        unique_by: Sequence[str],
        update: Sequence[str] | None = None,
    ) -> Fragment:
        insert = self.compile_insert(columns, rows)
        assignments = ", ".join(
            f"{quote(column)} = VALUES({quote(column)})"
            for column in (update if update is not None else columns)
            if column not in unique_by
        )
        if not assignments:
            raise ValueError("Upsert has no columns left to update outside the unique key")

        return Fragment(f"{insert.sql} ON DUPLICATE KEY UPDATE {assignments}", insert.bindings)

    def compile_update(self, assignments: Sequence[Fragment]) -> Fragment:
        sql = f"UPDATE {quote(self.table)} SET {', '.join(a.sql for a in assignments)}"
        sql += f" WHERE {compile_predicates(self.wheres)}"
        return Fragment(sql, (*(b for a in assignments for b in a.bindings), *where_bindings(self.wheres)))

    def compile_delete(self) -> Fragment:
        return Fragment(
            f"DELETE FROM {quote(self.table)} WHERE {compile_predicates(self.wheres)}",
            tuple(where_bindings(self.wheres)),
        )


def compile_predicates(predicates: Sequence[Predicate]) -> str:
    """Join predicates with their connectives; the first one never carries one."""
    return "".join(
        predicate.sql if index == 0 else f" {predicate.boolean} {predicate.sql}"
        for index, predicate in enumerate(predicates)
    )


def where_bindings(predicates: Iterable[Predicate]) -> list[Binding]:
    return [binding for predicate in predicates for binding in predicate.bindings]

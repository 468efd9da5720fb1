"""Relational query building and eager loading over an async SQLAlchemy connection.

sqla_relquery renders fluent ``QueryBuilder`` chains into parameterized SQL,
executes them through a ``StatementExecutor`` (``SqlAlchemyExecutor`` wraps an
``AsyncConnection``), and materializes related rows declared in a
``RelationRegistry`` with a fixed number of batch queries per relation.
Relationship-existence predicates (``where_has``) and per-parent
relationship aggregates (``with_count``/``with_sum``/...) are compiled into
correlated and grouped subqueries.
"""

from ._version import __version__, __version_tuple__
from .aggregates import AggregateAttacher
from .bindings import Binding, to_binding, to_bindings
from .builder import DEFAULT_CHUNK_SIZE, QueryBuilder
from .datastructures import frozendict
from .entity import Entity, Record
from .exceptions import (
    RelationNotFoundError,
    RelQueryError,
    UnsafeMutationError,
    UnsupportedRelationError,
)
from .executor import SqlAlchemyExecutor, StatementExecutor, StatementResult
from .loader import EagerLoader, load_relations
from .pagination import (
    DEFAULT_PER_PAGE,
    DEFAULT_RELATION_PER_PAGE,
    CursorPaginatedResult,
    PaginatedResult,
    SimplePaginatedResult,
)
from .parser import RelationMeta, RelationNode, parse_relations
from .relations import RelationDefinition, RelationKind, RelationRegistry
from .state import AggregateRequest, LockMode, QueryState
from .tools import ALLOWED_OPERATORS, aggregate_attribute, quote


__all__ = (
    "ALLOWED_OPERATORS",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_PER_PAGE",
    "DEFAULT_RELATION_PER_PAGE",
    "AggregateAttacher",
    "AggregateRequest",
    "Binding",
    "CursorPaginatedResult",
    "EagerLoader",
    "Entity",
    "LockMode",
    "PaginatedResult",
    "QueryBuilder",
    "QueryState",
    "Record",
    "RelQueryError",
    "RelationDefinition",
    "RelationKind",
    "RelationMeta",
    "RelationNode",
    "RelationNotFoundError",
    "RelationRegistry",
    "SimplePaginatedResult",
    "SqlAlchemyExecutor",
    "StatementExecutor",
    "StatementResult",
    "UnsafeMutationError",
    "UnsupportedRelationError",
    "__version__",
    "__version_tuple__",
    "aggregate_attribute",
    "frozendict",
    "load_relations",
    "parse_relations",
    "quote",
    "to_binding",
    "to_bindings",
)

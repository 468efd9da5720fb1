from __future__ import annotations


class RelQueryError(Exception):
    """Base class for all sqla_relquery errors."""


class UnsafeMutationError(RelQueryError, ValueError):
    """Raised when an UPDATE/DELETE-style statement has no WHERE predicate."""

    def __init__(self, operation: str, table: str) -> None:
        self.operation = operation
        self.table = table
        super().__init__(
            f"Refusing to {operation} `{table}` without a WHERE clause"
        )


class UnsupportedRelationError(RelQueryError, NotImplementedError):
    """Raised when an operation is not available for a relation kind."""


class RelationNotFoundError(RelQueryError, LookupError):
    """Raised when a relation name is not declared for an entity type or table."""

    def __init__(self, owner: str, relation: str) -> None:
        self.owner = owner
        self.relation = relation
        super().__init__(f"No relation '{relation}' declared on {owner}")

from __future__ import annotations

import enum
import warnings
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Union, final

from .datastructures import frozendict
from .exceptions import UnsupportedRelationError


if TYPE_CHECKING:
    import sqlalchemy as sa

    from .builder import QueryBuilder


EntityFactory = Callable[[Mapping[str, Any]], Any]
Constraint = Callable[["QueryBuilder"], Any]
Owner = Union[type, str]

DEFAULT_KEY: Final[str] = "id"


class RelationKind(str, enum.Enum):
    HAS_ONE = "hasOne"
    HAS_MANY = "hasMany"
    BELONGS_TO = "belongsTo"
    BELONGS_TO_MANY = "belongsToMany"
    MORPH_ONE = "morphOne"
    MORPH_MANY = "morphMany"
    MORPH_TO = "morphTo"

    @property
    def is_many(self) -> bool:
        return self in (RelationKind.HAS_MANY, RelationKind.BELONGS_TO_MANY, RelationKind.MORPH_MANY)

    @property
    def is_morph(self) -> bool:
        return self in (RelationKind.MORPH_ONE, RelationKind.MORPH_MANY, RelationKind.MORPH_TO)


@dataclass(frozen=True, slots=True)
class RelationDefinition:
    """Read-only description of one declared relation.

    Key naming follows the owner/related split: ``local_key`` is always a
    column of the owner's table and ``foreign_key`` a column of the related
    table.  For ``belongsTo`` the owner holds the reference (``local_key`` is
    e.g. ``author_id``) and ``foreign_key`` is the related table's key; for
    ``belongsToMany`` ``foreign_key`` is the related table's key matched
    against ``related_pivot_key``.  For ``morphOne``/``morphMany`` the related
    table carries ``morph_id_field`` (matched against ``local_key``) and
    ``morph_type_field`` (matched against the owner's morph type tag).
    """

    kind: RelationKind
    related_table: str
    local_key: str = DEFAULT_KEY
    foreign_key: str = DEFAULT_KEY
    factory: EntityFactory | None = None
    related_type: type | None = None
    pivot_table: str | None = None
    foreign_pivot_key: str | None = None
    related_pivot_key: str | None = None
    morph_id_field: str | None = None
    morph_type_field: str | None = None
    constraint: Constraint | None = None

    def __post_init__(self) -> None:
        if self.kind is RelationKind.BELONGS_TO_MANY and not (
            self.pivot_table and self.foreign_pivot_key and self.related_pivot_key
        ):
            raise ValueError("belongsToMany requires pivot_table, foreign_pivot_key and related_pivot_key")

        if self.kind.is_morph and not (self.morph_id_field and self.morph_type_field):
            raise ValueError(f"{self.kind.value} requires morph_id_field and morph_type_field")

    @property
    def owner_column(self) -> str:
        """Column of the owner whose values key the batch query."""
        return self.local_key

    @property
    def related_column(self) -> str:
        """Column of the related table matched against :attr:`owner_column`."""
        if self.kind in (RelationKind.MORPH_ONE, RelationKind.MORPH_MANY):
            return self.morph_id_field  # type: ignore[return-value]

        return self.foreign_key

    def make(self, row: Mapping[str, Any]) -> Any:
        """Convert a related row to an entity (the row itself without a factory)."""
        return self.factory(row) if self.factory is not None else dict(row)


@final
class RelationRegistry:
    """Relation declarations keyed by owner entity type and by owner table.

    A registry is created once per application (or test) and handed to every
    :class:`~sqla_relquery.builder.QueryBuilder` and loader that needs it.
    Lookups accept either the entity class or its table name, so builders
    over plain tables can resolve relations as well.

    Example:
        >>> registry = RelationRegistry()
        >>> registry.has_many(User, "posts", Post, foreign_key="user_id")
        >>> registry.belongs_to(Post, "author", User, local_key="user_id")
        >>> registry.lookup(User, "posts").related_table
        'posts'
    """

    __slots__ = ("_by_owner", "_morph_types")

    def __init__(self) -> None:
        self._by_owner: dict[Owner, dict[str, RelationDefinition]] = {}
        self._morph_types: dict[type, str] = {}

    def register(self, owner: Owner, name: str, definition: RelationDefinition) -> RelationDefinition:
        """Declare relation *name* on *owner* (entity type, also indexed by its table)."""
        for key in _owner_keys(owner):
            self._by_owner.setdefault(key, {})[name] = definition

        return definition

    def lookup(self, owner: Owner, name: str) -> RelationDefinition | None:
        """Return the definition of *name* on *owner*, or ``None`` if undeclared."""
        for key in _owner_keys(owner):
            if (definition := self._by_owner.get(key, {}).get(name)) is not None:
                return definition

        return None

    def relations(self, owner: Owner) -> Mapping[str, RelationDefinition]:
        """Snapshot of every relation declared on *owner*."""
        merged: dict[str, RelationDefinition] = {}
        for key in reversed(_owner_keys(owner)):
            merged.update(self._by_owner.get(key, {}))

        return frozendict(merged)

    def __contains__(self, owner: object) -> bool:
        return owner in self._by_owner

    # --- morph type tags ---

    def register_morph_type(self, entity_type: type, tag: str) -> None:
        self._morph_types[entity_type] = tag

    def morph_type(self, entity_type: type) -> str:
        """Tag stored in polymorphic type columns for *entity_type*.

        Raises:
            UnsupportedRelationError: If no tag was registered or declared.
        """
        if (tag := self._morph_types.get(entity_type)) is not None:
            return tag

        if (tag := getattr(entity_type, "__morph_type__", None)) is not None:
            return tag

        raise UnsupportedRelationError(
            f"No morph type registered for {entity_type.__name__}; "
            "call register_morph_type() or declare __morph_type__"
        )

    # --- declaration helpers ---

    def has_one(
        self,
        owner: Owner,
        name: str,
        related: type,
        *,
        foreign_key: str,
        local_key: str = DEFAULT_KEY,
        constraint: Constraint | None = None,
    ) -> RelationDefinition:
        return self.register(owner, name, RelationDefinition(
            kind=RelationKind.HAS_ONE,
            local_key=local_key,
            foreign_key=foreign_key,
            constraint=constraint,
            **_related(related),
        ))

    def has_many(
        self,
        owner: Owner,
        name: str,
        related: type,
        *,
        foreign_key: str,
        local_key: str = DEFAULT_KEY,
        constraint: Constraint | None = None,
    ) -> RelationDefinition:
        return self.register(owner, name, RelationDefinition(
            kind=RelationKind.HAS_MANY,
            local_key=local_key,
            foreign_key=foreign_key,
            constraint=constraint,
            **_related(related),
        ))

    def belongs_to(
        self,
        owner: Owner,
        name: str,
        related: type,
        *,
        local_key: str,
        foreign_key: str = DEFAULT_KEY,
        constraint: Constraint | None = None,
    ) -> RelationDefinition:
        """``local_key`` is the referencing column on *owner*, ``foreign_key`` the related key."""
        return self.register(owner, name, RelationDefinition(
            kind=RelationKind.BELONGS_TO,
            local_key=local_key,
            foreign_key=foreign_key,
            constraint=constraint,
            **_related(related),
        ))

    def belongs_to_many(
        self,
        owner: Owner,
        name: str,
        related: type,
        *,
        pivot_table: str,
        foreign_pivot_key: str,
        related_pivot_key: str,
        local_key: str = DEFAULT_KEY,
        related_key: str = DEFAULT_KEY,
        constraint: Constraint | None = None,
    ) -> RelationDefinition:
        return self.register(owner, name, RelationDefinition(
            kind=RelationKind.BELONGS_TO_MANY,
            local_key=local_key,
            foreign_key=related_key,
            pivot_table=pivot_table,
            foreign_pivot_key=foreign_pivot_key,
            related_pivot_key=related_pivot_key,
            constraint=constraint,
            **_related(related),
        ))

    def morph_one(
        self,
        owner: Owner,
        name: str,
        related: type,
        *,
        morph_name: str,
        local_key: str = DEFAULT_KEY,
        constraint: Constraint | None = None,
    ) -> RelationDefinition:
        """``morph_name="attachable"`` reads ``attachable_id``/``attachable_type``."""
        return self._morph(RelationKind.MORPH_ONE, owner, name, related, morph_name, local_key, constraint)

    def morph_many(
        self,
        owner: Owner,
        name: str,
        related: type,
        *,
        morph_name: str,
        local_key: str = DEFAULT_KEY,
        constraint: Constraint | None = None,
    ) -> RelationDefinition:
        return self._morph(RelationKind.MORPH_MANY, owner, name, related, morph_name, local_key, constraint)

    def morph_to(
        self,
        owner: Owner,
        name: str,
        related: type,
        *,
        morph_name: str,
    ) -> RelationDefinition:
        return self.register(owner, name, RelationDefinition(
            kind=RelationKind.MORPH_TO,
            local_key=f"{morph_name}_id",
            morph_id_field=f"{morph_name}_id",
            morph_type_field=f"{morph_name}_type",
            **_related(related),
        ))

    def _morph(
        self,
        kind: RelationKind,
        owner: Owner,
        name: str,
        related: type,
        morph_name: str,
        local_key: str,
        constraint: Constraint | None,
    ) -> RelationDefinition:
        return self.register(owner, name, RelationDefinition(
            kind=kind,
            local_key=local_key,
            morph_id_field=f"{morph_name}_id",
            morph_type_field=f"{morph_name}_type",
            constraint=constraint,
            **_related(related),
        ))

    # --- reflection ---

    @classmethod
    def from_metadata(
        cls,
        metadata: sa.MetaData,
        entities: Mapping[str, type],
    ) -> RelationRegistry:
        """Build a registry from the foreign-key graph of a SQLAlchemy ``MetaData``.

        Args:
            metadata: Tables to introspect.
            entities: Mapping of table name to the entity type rows of that
                table are converted to.  Tables without an entity are only
                considered as pivot tables.

        Returns:
            A registry where each foreign key ``child.col -> parent.key``
            declares ``belongsTo`` on the child (named after the column minus
            its ``_id`` suffix) and ``hasMany`` on the parent (named after the
            child table).  A table whose primary key consists of exactly its
            two foreign-key columns is a pivot: both sides get a
            ``belongsToMany`` named after the other side's table.
        """
        registry = cls()

        def declare(owner: type, name: str, definition: RelationDefinition) -> None:
            if registry.lookup(owner, name) is not None:
                warnings.warn(
                    f"Relation name '{name}' on {owner.__name__} is ambiguous; "
                    "keeping the first declaration",
                    stacklevel=3,
                )
                return

            registry.register(owner, name, definition)

        for table in metadata.sorted_tables:
            fks = list(table.foreign_keys)

            if _is_pivot(table):
                left, right = fks
                for near, far in ((left, right), (right, left)):
                    owner = entities.get(near.column.table.name)
                    related = entities.get(far.column.table.name)
                    if owner is None or related is None:
                        continue

                    declare(owner, far.column.table.name, RelationDefinition(
                        kind=RelationKind.BELONGS_TO_MANY,
                        local_key=near.column.name,
                        foreign_key=far.column.name,
                        pivot_table=table.name,
                        foreign_pivot_key=near.parent.name,
                        related_pivot_key=far.parent.name,
                        **_related(related),
                    ))
                continue

            child = entities.get(table.name)
            if child is None:
                continue

            for fk in fks:
                parent = entities.get(fk.column.table.name)
                if parent is None:
                    continue

                column = fk.parent.name
                declare(child, column.removesuffix("_id") if column.endswith("_id") else fk.column.table.name,
                        RelationDefinition(
                            kind=RelationKind.BELONGS_TO,
                            local_key=column,
                            foreign_key=fk.column.name,
                            **_related(parent),
                        ))
                declare(parent, table.name, RelationDefinition(
                    kind=RelationKind.HAS_MANY,
                    local_key=fk.column.name,
                    foreign_key=column,
                    **_related(child),
                ))

        return registry


def _owner_keys(owner: Owner) -> tuple[Owner, ...]:
    if isinstance(owner, str):
        return (owner,)

    table = getattr(owner, "__tablename__", None)
    return (owner, table) if table else (owner,)


def _related(related: type) -> dict[str, Any]:
    table = getattr(related, "__tablename__", None)
    if not table:
        raise ValueError(f"Cannot determine tablename for {related!r}")

    return {
        "related_table": table,
        "related_type": related,
        "factory": getattr(related, "from_row", related),
    }


def _is_pivot(table: sa.Table) -> bool:
    fks = list(table.foreign_keys)
    if len(fks) != 2:
        return False

    pk = {column.name for column in table.primary_key.columns}
    return pk == {fk.parent.name for fk in fks}

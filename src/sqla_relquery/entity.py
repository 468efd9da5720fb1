from __future__ import annotations

import sys
from collections.abc import Mapping
from typing import Any, ClassVar, Protocol, runtime_checkable


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


@runtime_checkable
class Entity(Protocol):
    """What the eager loader and aggregate attacher need from an entity."""

    def get_attribute(self, key: str) -> Any: ...

    def set_attribute(self, key: str, value: Any) -> None: ...

    def set_relation(self, name: str, value: Any) -> None: ...


class Record:
    """Minimal :class:`Entity` backed by an attribute dict and a relation dict.

    Subclasses declare the table they map to and, optionally, the relations
    loaded by default and the tag stored in polymorphic type columns::

        class User(Record):
            __tablename__ = "users"
            __morph_type__ = "user"
            default_relations = ("profile",)

    Attribute and relation values are reachable by item or attribute access;
    attributes win over relations of the same name.
    """

    __tablename__: ClassVar[str]
    __morph_type__: ClassVar[str | None] = None
    default_relations: ClassVar[tuple[Any, ...]] = ()

    __slots__ = ("attributes", "relations")

    def __init__(self, attributes: Mapping[str, Any] | None = None, /, **kwargs: Any) -> None:
        self.attributes: dict[str, Any] = {**(attributes or {}), **kwargs}
        self.relations: dict[str, Any] = {}

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Self:
        """Entity factory: build an instance from one result row."""
        return cls(row)

    def get_attribute(self, key: str) -> Any:
        return self.attributes.get(key)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def set_relation(self, name: str, value: Any) -> None:
        self.relations[name] = value

    def get_relation(self, name: str, default: Any = None) -> Any:
        return self.relations.get(name, default)

    def relation_loaded(self, name: str) -> bool:
        return name in self.relations

    def to_dict(self) -> dict[str, Any]:
        """Attributes plus loaded relations, recursively converted."""
        return {
            **self.attributes,
            **{name: _dump(value) for name, value in self.relations.items()},
        }

    def __getitem__(self, key: str) -> Any:
        if key in self.attributes:
            return self.attributes[key]

        return self.relations[key]

    def __getattr__(self, name: str) -> Any:
        # only reached when normal lookup fails, i.e. for column/relation names
        if name.startswith("__") or name in Record.__slots__:
            raise AttributeError(name)

        try:
            return self[name]
        except KeyError:
            raise AttributeError(
                f"{type(self).__name__!r} object has no attribute or relation {name!r}"
            ) from None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return NotImplemented

        return type(self) is type(other) and self.attributes == other.attributes

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.attributes!r}>"


def _dump(value: Any) -> Any:
    if isinstance(value, Record):
        return value.to_dict()

    if isinstance(value, list):
        return [_dump(item) for item in value]

    if isinstance(value, Mapping):
        return {key: _dump(item) for key, item in value.items()}

    return value

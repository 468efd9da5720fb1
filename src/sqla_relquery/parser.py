"""Relation-spec parsing.

Relation specs arrive in two wire shapes that may be mixed in one list:

* strings: ``"posts"``, ``"posts.comments"``,
  ``"comments:paginated:page=2:perPage=10"`` (modifiers may follow any
  path segment and apply to that segment);
* mappings: ``{"posts": {"paginate": True, "page": 1, "perPage": 10,
  "with": [...], "query": callback}}``; a bare callback as the value is
  shorthand for ``{"query": callback}``.

Parsing goes through an explicit tree (:class:`RelationNode`) so that specs
naming the same relation are merged before any query is issued, then the tree
is frozen into :class:`RelationMeta` values consumed by the eager loader.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final, Union

from .datastructures import frozendict


RelationSpec = Union[str, Mapping[str, Any], "RelationMeta"]

PAGINATED: Final[str] = "paginated"
_INT_MODIFIERS: Final[dict[str, str]] = {"page": "page", "perPage": "per_page", "per_page": "per_page"}


@dataclass(frozen=True, slots=True)
class RelationMeta:
    """One requested relation load, parsed and immutable."""

    key: str
    paginate: bool = False
    page: int | None = None
    per_page: int | None = None
    nested: tuple[RelationMeta, ...] = ()
    constraint: Callable[[Any], Any] | None = None

    @property
    def nested_keys(self) -> tuple[str, ...]:
        return tuple(meta.key for meta in self.nested)


@dataclass(slots=True)
class RelationNode:
    """Intermediate parse tree node: a relation name, its modifiers, its children."""

    name: str
    modifiers: frozendict[str, Any] = field(default_factory=frozendict)
    children: dict[str, RelationNode] = field(default_factory=dict)

    def child(self, name: str) -> RelationNode:
        if (node := self.children.get(name)) is None:
            node = self.children[name] = RelationNode(name)

        return node

    def update(self, modifiers: Mapping[str, Any]) -> None:
        # the first constraint seen for a relation sticks
        if "constraint" in modifiers and "constraint" in self.modifiers:
            modifiers = frozendict(modifiers).without("constraint")

        self.modifiers = self.modifiers.merge(modifiers)

    def freeze(self) -> RelationMeta:
        mods = self.modifiers
        return RelationMeta(
            key=self.name,
            paginate=bool(mods.get("paginate", False)),
            page=mods.get("page"),
            per_page=mods.get("per_page"),
            nested=tuple(node.freeze() for node in self.children.values()),
            constraint=mods.get("constraint"),
        )


class _StringParser:
    """Recursive-descent parser for ``path := segment ('.' path)?``,
    ``segment := name (':' modifier)*``."""

    __slots__ = ("_parts", "_source")

    def __init__(self, source: str) -> None:
        self._source = source
        self._parts = [part.strip() for part in source.split(".")]

    def parse_into(self, root: RelationNode) -> None:
        self._path(root, 0)

    def _path(self, parent: RelationNode, index: int) -> None:
        if index >= len(self._parts):
            return

        name, modifiers = self._segment(self._parts[index])
        if not name:
            raise ValueError(f"Empty relation name in {self._source!r}")

        node = parent.child(name)
        node.update(modifiers)
        self._path(node, index + 1)

    @staticmethod
    def _segment(segment: str) -> tuple[str, dict[str, Any]]:
        name, *tokens = (token.strip() for token in segment.split(":"))
        modifiers: dict[str, Any] = {}
        for token in tokens:
            if token == PAGINATED:
                modifiers["paginate"] = True
                continue

            key, sep, raw = token.partition("=")
            # unknown or malformed modifiers are ignored
            if sep and key in _INT_MODIFIERS and (value := _to_int(raw)) is not None:
                modifiers[_INT_MODIFIERS[key]] = value

        return name, modifiers


def _to_int(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None

    if isinstance(raw, int):
        return raw

    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def _parse_mapping(entry: Mapping[str, Any], root: RelationNode) -> None:
    for path, options in entry.items():
        _StringParser(path).parse_into(root)
        leaf = root
        for part in path.split("."):
            leaf = leaf.child(part.split(":", 1)[0].strip())

        if callable(options):
            leaf.update({"constraint": options})
            continue

        if not options:
            continue

        modifiers: dict[str, Any] = {}
        if "paginate" in options:
            modifiers["paginate"] = bool(options["paginate"])
        for key, attr in _INT_MODIFIERS.items():
            if key in options and (value := _to_int(options[key])) is not None:
                modifiers[attr] = value
        if options.get("query") is not None:
            modifiers["constraint"] = options["query"]

        leaf.update(modifiers)
        _parse_into(options.get("with") or (), leaf)


def _graft(meta: RelationMeta, root: RelationNode) -> None:
    node = root.child(meta.key)
    node.update({
        **({"paginate": True} if meta.paginate else {}),
        **({"page": meta.page} if meta.page is not None else {}),
        **({"per_page": meta.per_page} if meta.per_page is not None else {}),
        **({"constraint": meta.constraint} if meta.constraint is not None else {}),
    })
    for nested in meta.nested:
        _graft(nested, node)


def _parse_into(raw: Iterable[RelationSpec] | RelationSpec, root: RelationNode) -> None:
    if isinstance(raw, (str, Mapping, RelationMeta)):
        raw = (raw,)

    for entry in raw:
        if isinstance(entry, RelationMeta):
            _graft(entry, root)
        elif isinstance(entry, str):
            _StringParser(entry).parse_into(root)
        elif isinstance(entry, Mapping):
            _parse_mapping(entry, root)
        else:
            raise TypeError(f"Unsupported relation spec {entry!r}")


def parse_tree(raw: Iterable[RelationSpec] | RelationSpec) -> RelationNode:
    """Parse relation specs into a (nameless) root :class:`RelationNode`."""
    root = RelationNode("")
    _parse_into(raw, root)
    return root


def parse_relations(raw: Iterable[RelationSpec] | RelationSpec) -> tuple[RelationMeta, ...]:
    """Parse a list of relation specs into :class:`RelationMeta` values.

    Specs naming the same relation at the same depth are merged: nested
    children are unioned, later modifiers override earlier ones and the first
    constraint wins.

    Example:
        >>> [meta] = parse_relations(["comments:paginated:page=2:perPage=10"])
        >>> meta.key, meta.paginate, meta.page, meta.per_page
        ('comments', True, 2, 10)
    """
    return parse_tree(raw).freeze().nested


def relation_keys(raw: Iterable[RelationSpec] | RelationSpec) -> tuple[str, ...]:
    """Top-level relation names referenced by *raw*."""
    return tuple(parse_tree(raw).children)

from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Read-only mapping used for parsed relation modifiers and registry snapshots.

    Values may be unhashable (constraint callbacks, nested lists), so the hash
    is computed lazily and only succeeds when every value is hashable.

    Example:
        >>> mods = frozendict(paginated=True, page=2)
        >>> mods.set(perPage=10)
        <frozendict {'paginated': True, 'page': 2, 'perPage': 10}>
        >>> mods.without("page")
        <frozendict {'paginated': True}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def set(self, **add_or_replace: Any) -> Self:
        """Return a copy with *add_or_replace* merged in."""
        return type(self)(self._dict, **add_or_replace)

    def merge(self, other: Mapping[K, V]) -> Self:
        """Return a copy where keys of *other* win."""
        return type(self)({**self._dict, **other})

    def without(self, *keys: K) -> Self:
        """Return a copy without *keys* (missing keys are ignored)."""
        return type(self)({k: v for k, v in self._dict.items() if k not in keys})

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash

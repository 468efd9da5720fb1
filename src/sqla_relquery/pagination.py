from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Final, Generic, TypeVar


T = TypeVar("T")

DEFAULT_PER_PAGE: Final[int] = 15
DEFAULT_RELATION_PER_PAGE: Final[int] = 10


def last_page(total: int, per_page: int) -> int:
    return math.ceil(total / per_page)


def page_offset(page: int, per_page: int) -> int:
    if page < 1 or per_page < 1:
        raise ValueError(f"page and per_page must be positive, got page={page}, per_page={per_page}")

    return (page - 1) * per_page


@dataclass(frozen=True, slots=True)
class PaginatedResult(Generic[T]):
    """One page of an offset-paginated query plus the total row count."""

    data: Sequence[T]
    total: int
    per_page: int
    current_page: int
    last_page: int

    @property
    def has_more_pages(self) -> bool:
        return self.current_page < self.last_page

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": list(self.data),
            "total": self.total,
            "perPage": self.per_page,
            "currentPage": self.current_page,
            "lastPage": self.last_page,
        }


@dataclass(frozen=True, slots=True)
class CursorPaginatedResult(Generic[T]):
    data: Sequence[T]
    per_page: int
    next_cursor: Any = None
    previous_cursor: Any = None
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": list(self.data),
            "perPage": self.per_page,
            "nextCursor": self.next_cursor,
            "previousCursor": self.previous_cursor,
            "hasMore": self.has_more,
        }


@dataclass(frozen=True, slots=True)
class SimplePaginatedResult(Generic[T]):
    """Count-less page: ``from_``/``to`` are 1-based row positions, ``None`` for an empty page."""

    data: Sequence[T]
    per_page: int
    current_page: int
    has_more_pages: bool
    from_: int | None = None
    to: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": list(self.data),
            "perPage": self.per_page,
            "currentPage": self.current_page,
            "hasMorePages": self.has_more_pages,
            "from": self.from_,
            "to": self.to,
        }

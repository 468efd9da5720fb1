from __future__ import annotations

import json
from collections.abc import Iterable
from functools import lru_cache
from typing import Any, Final


ALLOWED_OPERATORS: Final[frozenset[str]] = frozenset({
    "=",
    "<",
    ">",
    "<=",
    ">=",
    "<>",
    "!=",
    "<=>",
    "LIKE",
    "NOT LIKE",
})


@lru_cache(maxsize=1024)
def quote(identifier: str) -> str:
    """Quote a (possibly dotted) identifier with backticks.

    Every dot-separated segment is quoted on its own so that qualified names
    keep their meaning; ``*`` is never quoted.

    Example:
        >>> quote("users.id")
        '`users`.`id`'
        >>> quote("posts.*")
        '`posts`.*'
    """
    return ".".join(
        segment if segment == "*" else f"`{segment.strip('`')}`"
        for segment in identifier.split(".")
    )


def quote_all(identifiers: Iterable[str]) -> str:
    """Quote and comma-join *identifiers*."""
    return ", ".join(quote(identifier) for identifier in identifiers)


def placeholders(count: int) -> str:
    """Return ``count`` comma-separated ``?`` placeholders."""
    return ", ".join("?" * count)


def check_operator(operator: str) -> str:
    """Normalize a comparison operator, rejecting anything outside the allow-list."""
    normalized = " ".join(operator.upper().split())
    if normalized not in ALLOWED_OPERATORS:
        raise ValueError(f"Unsupported comparison operator {operator!r}")

    return normalized


def json_literal(value: Any) -> str:
    """Serialize *value* into the JSON text a containment function expects."""
    return json.dumps(value, separators=(",", ":"), default=str)


def json_path(path: str) -> str:
    """Turn ``"a.b"`` into the ``"$.a.b"`` path syntax."""
    return path if path.startswith("$") else f"$.{path}"


def studly(name: str) -> str:
    """``unit_price`` -> ``UnitPrice``; already camel-cased input keeps its humps."""
    return "".join(part[:1].upper() + part[1:] for part in name.replace("-", "_").split("_"))


def aggregate_attribute(relation: str, function: str, column: str | None = None) -> str:
    """Name of the synthetic attribute holding a relationship aggregate.

    Example:
        >>> aggregate_attribute("orders", "count")
        'ordersCount'
        >>> aggregate_attribute("orders", "sum", "amount")
        'ordersAmountSum'
    """
    if function == "count" or not column:
        return f"{relation}{studly(function)}"

    return f"{relation}{studly(column.rsplit('.', 1)[-1])}{studly(function)}"

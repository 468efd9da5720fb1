from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from .bindings import Binding, to_bindings


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StatementResult:
    """Outcome of one executed statement."""

    rows: Sequence[Mapping[str, Any]] = field(default_factory=tuple)
    insert_id: int | None = None
    affected_rows: int | None = None


class StatementExecutor(Protocol):
    """Executes one parameterized statement.

    ``sql`` uses ``?`` positional placeholders; ``bindings`` are in placeholder
    order.  Failures propagate to the caller unchanged.
    """

    async def execute(self, sql: str, bindings: Sequence[Binding]) -> StatementResult: ...


class SqlAlchemyExecutor:
    """:class:`StatementExecutor` running statements on a SQLAlchemy ``AsyncConnection``.

    Statements are sent through ``exec_driver_sql`` so the rendered text reaches
    the DBAPI driver as-is; only the placeholder marker is adapted to the
    driver's paramstyle.  Transaction control stays with the owner of the
    connection.

    Example::

        async with engine.connect() as conn:
            executor = SqlAlchemyExecutor(conn)
            users = await QueryBuilder(executor, "users").where("active", "=", True).get()
    """

    __slots__ = ("_connection",)

    def __init__(self, connection: AsyncConnection) -> None:
        self._connection = connection

    @property
    def connection(self) -> AsyncConnection:
        return self._connection

    async def execute(self, sql: str, bindings: Sequence[Binding]) -> StatementResult:
        statement = to_paramstyle(sql, self._connection.dialect.paramstyle)
        params = tuple(to_bindings(bindings))
        logger.debug("execute %s [%d bindings]", statement, len(params))

        result = await self._connection.exec_driver_sql(statement, params)
        if result.returns_rows:
            return StatementResult(rows=[dict(row) for row in result.mappings()])

        rowcount = result.rowcount
        return StatementResult(
            insert_id=result.lastrowid or None,
            affected_rows=rowcount if rowcount is not None and rowcount >= 0 else None,
        )


def to_paramstyle(sql: str, paramstyle: str) -> str:
    """Rewrite ``?`` placeholders for *paramstyle*.

    ``qmark`` statements are returned untouched.  For ``format``/``pyformat``
    every ``?`` outside a quoted literal or identifier becomes ``%s`` and
    literal ``%`` signs are doubled.  ``numeric`` becomes ``:1``, ``:2``, ...

    Raises:
        ValueError: For the ``named`` paramstyle, which cannot carry
            positional bindings.
    """
    if paramstyle == "qmark":
        return sql

    if paramstyle == "named":
        raise ValueError("Positional bindings cannot be sent to a 'named' paramstyle driver")

    out: list[str] = []
    quote: str | None = None
    position = 0
    for char in sql:
        if quote is not None:
            if char == quote:
                quote = None
            out.append("%%" if char == "%" and paramstyle != "numeric" else char)
            continue

        if char in ("'", '"', "`"):
            quote = char
            out.append(char)
        elif char == "?":
            position += 1
            out.append(f":{position}" if paramstyle == "numeric" else "%s")
        elif char == "%" and paramstyle != "numeric":
            out.append("%%")
        else:
            out.append(char)

    return "".join(out)

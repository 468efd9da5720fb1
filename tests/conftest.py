from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqla_relquery import RelationRegistry, SqlAlchemyExecutor, StatementResult
from sqla_relquery.bindings import Binding

from .models import SEED, build_registry, metadata


pytestmark = pytest.mark.anyio


class RecordingExecutor:
    """Executor double: records every statement, optionally delegating to a real executor.

    Without a delegate it answers every statement with ``rows`` (or the next
    entry of ``responses`` when given) so SQL synthesis can be checked
    without a database.
    """

    def __init__(
        self,
        inner: SqlAlchemyExecutor | None = None,
        *,
        rows: Sequence[Mapping[str, Any]] = (),
        responses: Sequence[StatementResult] = (),
    ) -> None:
        self.inner = inner
        self.rows = [dict(row) for row in rows]
        self.responses = list(responses)
        self.statements: list[tuple[str, list[Binding]]] = []

    @property
    def sql(self) -> list[str]:
        return [sql for sql, _ in self.statements]

    @property
    def count(self) -> int:
        return len(self.statements)

    def reset(self) -> None:
        self.statements.clear()

    async def execute(self, sql: str, bindings: Sequence[Binding]) -> StatementResult:
        self.statements.append((sql, list(bindings)))
        if self.inner is not None:
            return await self.inner.execute(sql, bindings)

        if self.responses:
            return self.responses.pop(0)

        return StatementResult(rows=[dict(row) for row in self.rows])


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--dsn",
        default=None,
        help="Async SQLAlchemy URL to run integration cases against (default: temporary SQLite file)",
    )


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def db_config(request: pytest.FixtureRequest, tmp_path_factory: pytest.TempPathFactory) -> str:
    dsn: str | None = request.config.getoption("--dsn")
    if dsn:
        return dsn

    tmp = tmp_path_factory.mktemp("db")
    return f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def connection(engine: AsyncEngine, _create_tables: None) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def seed_data(connection: AsyncConnection) -> None:
    for table in metadata.sorted_tables:
        if rows := SEED.get(table):
            await connection.execute(table.insert(), rows)


@pytest.fixture
def registry() -> RelationRegistry:
    return build_registry()


@pytest.fixture
def executor(connection: AsyncConnection) -> RecordingExecutor:
    """Real executor over the test connection, with statement recording."""
    return RecordingExecutor(SqlAlchemyExecutor(connection))


@pytest.fixture
def fake_executor() -> RecordingExecutor:
    """Database-free executor answering every statement with no rows."""
    return RecordingExecutor()

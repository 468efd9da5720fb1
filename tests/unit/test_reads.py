from __future__ import annotations

import pytest

from sqla_relquery import QueryBuilder, StatementResult
from sqla_relquery.pagination import PaginatedResult, SimplePaginatedResult, last_page, page_offset

from ..conftest import RecordingExecutor


pytestmark = pytest.mark.anyio


def _rows(*ids: int) -> StatementResult:
    return StatementResult(rows=[{"id": i} for i in ids])


class TestPageMath:
    @pytest.mark.parametrize(("total", "per_page", "expected"), [(0, 15, 0), (5, 2, 3), (4, 2, 2), (1, 10, 1)])
    def test_last_page(self, total: int, per_page: int, expected: int) -> None:
        assert last_page(total, per_page) == expected

    def test_offset(self) -> None:
        assert page_offset(3, 10) == 20

    @pytest.mark.parametrize(("page", "per_page"), [(0, 10), (1, 0), (-1, 5)])
    def test_offset_rejects_non_positive(self, page: int, per_page: int) -> None:
        with pytest.raises(ValueError, match="must be positive"):
            page_offset(page, per_page)

    def test_wire_shapes(self) -> None:
        paginated = PaginatedResult(data=[1], total=3, per_page=1, current_page=1, last_page=3)
        simple = SimplePaginatedResult(data=[], per_page=5, current_page=2, has_more_pages=False)

        assert paginated.to_dict() == {"data": [1], "total": 3, "perPage": 1, "currentPage": 1, "lastPage": 3}
        assert paginated.has_more_pages
        assert simple.to_dict()["from"] is None


class TestPaginate:
    async def test_count_then_page(self) -> None:
        executor = RecordingExecutor(responses=[StatementResult(rows=[{"aggregate": 5}]), _rows(3, 4)])
        query = QueryBuilder(executor, "users").where("active", "=", True).order_by("id")

        page = await query.paginate(per_page=2, page=2)

        assert executor.statements == [
            ("SELECT COUNT(*) AS `aggregate` FROM `users` WHERE `active` = ? ORDER BY `id` ASC", [True]),
            ("SELECT * FROM `users` WHERE `active` = ? ORDER BY `id` ASC LIMIT 2 OFFSET 2", [True]),
        ]
        assert page.data == [{"id": 3}, {"id": 4}]
        assert (page.total, page.last_page, page.current_page) == (5, 3, 2)
        assert page.has_more_pages

    async def test_bad_page(self, fake_executor: RecordingExecutor) -> None:
        with pytest.raises(ValueError):
            await QueryBuilder(fake_executor, "users").paginate(per_page=10, page=0)

        assert fake_executor.count == 0


class TestSimplePaginate:
    async def test_probe_row_detects_more(self) -> None:
        executor = RecordingExecutor(responses=[_rows(1, 2, 3)])

        page = await QueryBuilder(executor, "posts").simple_paginate(per_page=2)

        assert executor.sql == ["SELECT * FROM `posts` LIMIT 3 OFFSET 0"]
        assert page.data == [{"id": 1}, {"id": 2}]
        assert page.has_more_pages is True
        assert (page.from_, page.to) == (1, 2)

    async def test_empty_page(self) -> None:
        executor = RecordingExecutor(responses=[_rows()])

        page = await QueryBuilder(executor, "posts").simple_paginate(per_page=2, page=4)

        assert executor.sql == ["SELECT * FROM `posts` LIMIT 3 OFFSET 6"]
        assert page.has_more_pages is False
        assert (page.from_, page.to) == (None, None)

    async def test_builder_not_mutated(self, fake_executor: RecordingExecutor) -> None:
        query = QueryBuilder(fake_executor, "posts").where("published", "=", True)
        await query.simple_paginate(per_page=2)

        assert query.to_sql() == "SELECT * FROM `posts` WHERE `published` = ?"


class TestCursorPaginate:
    async def test_after_cursor(self) -> None:
        executor = RecordingExecutor(responses=[_rows(5, 6, 7)])
        query = QueryBuilder(executor, "users").latest()

        page = await query.cursor_paginate(per_page=2, cursor=4)

        assert executor.statements == [("SELECT * FROM `users` WHERE `id` > ? ORDER BY `id` ASC LIMIT 3", [4])]
        assert page.data == [{"id": 5}, {"id": 6}]
        assert page.next_cursor == 6
        assert page.previous_cursor == 4
        assert page.has_more is True
        assert query.to_sql() == "SELECT * FROM `users` ORDER BY `created_at` DESC"

    async def test_last_page_has_no_cursor(self) -> None:
        executor = RecordingExecutor(responses=[_rows(7)])

        page = await QueryBuilder(executor, "users").cursor_paginate(per_page=2)

        assert executor.statements == [("SELECT * FROM `users` ORDER BY `id` ASC LIMIT 3", [])]
        assert page.next_cursor is None
        assert page.has_more is False

    async def test_qualified_column(self) -> None:
        executor = RecordingExecutor(rows=[{"id": 1}, {"id": 2}, {"id": 3}])

        page = await QueryBuilder(executor, "users").cursor_paginate(per_page=2, column="users.id")

        assert page.has_more is True
        assert page.next_cursor == 2


class TestAggregatesAndProbes:
    async def test_count(self) -> None:
        executor = RecordingExecutor(rows=[{"aggregate": 3}])

        assert await QueryBuilder(executor, "users").where("active", "=", True).count() == 3
        assert executor.sql == ["SELECT COUNT(*) AS `aggregate` FROM `users` WHERE `active` = ?"]

    async def test_sum_of_nothing_is_zero(self) -> None:
        executor = RecordingExecutor(rows=[{"aggregate": None}])

        assert await QueryBuilder(executor, "orders").sum("amount") == 0
        assert executor.sql == ["SELECT SUM(`amount`) AS `aggregate` FROM `orders`"]

    async def test_max_of_nothing_is_none(self) -> None:
        executor = RecordingExecutor(rows=[{"aggregate": None}])

        assert await QueryBuilder(executor, "orders").max("amount") is None

    async def test_exists(self) -> None:
        executor = RecordingExecutor(rows=[{"exists": 1}])

        assert await QueryBuilder(executor, "users").where("id", "=", 1).exists() is True
        assert executor.statements == [("SELECT EXISTS(SELECT * FROM `users` WHERE `id` = ?) AS `exists`", [1])]

    async def test_doesnt_exist(self) -> None:
        executor = RecordingExecutor(rows=[{"exists": 0}])

        assert await QueryBuilder(executor, "users").doesnt_exist() is True

    async def test_pluck(self) -> None:
        executor = RecordingExecutor(rows=[{"name": "alice"}, {"name": "bob"}])
        query = QueryBuilder(executor, "users").select("id", "name").order_by("name")

        assert await query.pluck("users.name") == ["alice", "bob"]
        assert executor.sql == ["SELECT `users`.`name` FROM `users` ORDER BY `name` ASC"]
        assert query.to_sql().startswith("SELECT id, name")

    async def test_first(self) -> None:
        executor = RecordingExecutor(rows=[{"id": 1}])

        assert await QueryBuilder(executor, "users").find(1) == {"id": 1}
        assert executor.statements == [("SELECT * FROM `users` WHERE `id` = ? LIMIT 1", [1])]

    async def test_first_on_empty(self, fake_executor: RecordingExecutor) -> None:
        assert await QueryBuilder(fake_executor, "users").first() is None


class TestChunking:
    async def test_chunk_stops_on_short_page(self) -> None:
        executor = RecordingExecutor(responses=[_rows(1, 2), _rows(3)])
        seen: list[list[int]] = []

        await QueryBuilder(executor, "users").chunk(2, lambda items: seen.append([i["id"] for i in items]))

        assert seen == [[1, 2], [3]]
        assert executor.sql == [
            "SELECT * FROM `users` LIMIT 2 OFFSET 0",
            "SELECT * FROM `users` LIMIT 2 OFFSET 2",
        ]

    async def test_chunk_stops_on_false(self) -> None:
        executor = RecordingExecutor(responses=[_rows(1, 2), _rows(3, 4)])

        async def stop(items: list[dict]) -> bool:
            return False

        await QueryBuilder(executor, "users").chunk(2, stop)

        assert executor.count == 1

    async def test_chunk_by_id(self) -> None:
        executor = RecordingExecutor(responses=[_rows(1, 2), _rows(5, 8), _rows()])

        await QueryBuilder(executor, "users").chunk_by_id(2, lambda items: None)

        assert executor.statements == [
            ("SELECT * FROM `users` ORDER BY `id` ASC LIMIT 2", []),
            ("SELECT * FROM `users` WHERE `id` > ? ORDER BY `id` ASC LIMIT 2", [2]),
            ("SELECT * FROM `users` WHERE `id` > ? ORDER BY `id` ASC LIMIT 2", [8]),
        ]

    async def test_lazy(self) -> None:
        executor = RecordingExecutor(responses=[_rows(1, 2), _rows(3, 4), _rows()])

        ids = [item["id"] async for item in QueryBuilder(executor, "users").lazy(chunk_size=2)]

        assert ids == [1, 2, 3, 4]
        assert executor.count == 3

    async def test_bad_size(self, fake_executor: RecordingExecutor) -> None:
        with pytest.raises(ValueError, match="chunk size must be positive"):
            await QueryBuilder(fake_executor, "users").chunk(0, lambda items: None)

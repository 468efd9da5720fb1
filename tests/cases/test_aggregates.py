from __future__ import annotations

import pytest

from sqla_relquery import (
    AggregateAttacher,
    AggregateRequest,
    QueryBuilder,
    RelationNotFoundError,
    RelationRegistry,
    UnsupportedRelationError,
)

from ..conftest import RecordingExecutor
from ..models import Attachment, Post, User

pytestmark = pytest.mark.anyio


def _users(executor: RecordingExecutor, registry: RelationRegistry) -> QueryBuilder[User]:
    return QueryBuilder.for_entity(executor, User, registry=registry).order_by("id")


class TestWithCount:
    async def test_belongs_to_many(
        self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None
    ) -> None:
        users = await _users(executor, registry).with_count("roles").get()

        assert [user.rolesCount for user in users] == [0, 2, 5]
        assert executor.count == 2
        assert "INNER JOIN `role_user`" in executor.sql[1]
        assert "GROUP BY `role_user`.`user_id`" in executor.sql[1]

    async def test_has_many(self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None) -> None:
        users = await _users(executor, registry).with_count("posts").get()

        assert [user.postsCount for user in users] == [3, 1, 0]

    async def test_constraint(self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None) -> None:
        users = await _users(executor, registry).with_count("posts", lambda q: q.where("published", "=", True)).get()

        assert [user.postsCount for user in users] == [2, 1, 0]

    async def test_declared_constraint(
        self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None
    ) -> None:
        users = await _users(executor, registry).with_count("publishedPosts").get()

        assert [user.publishedPostsCount for user in users] == [2, 1, 0]

    async def test_morph_many(self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None) -> None:
        users = await _users(executor, registry).with_count("attachments").get()

        assert [user.attachmentsCount for user in users] == [2, 1, 0]

    async def test_or_where_keeps_type_filter(
        self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None
    ) -> None:
        users = await _users(executor, registry).with_count(
            "attachments", lambda q: q.where("filename", "=", "avatar.png").or_where("filename", "=", "cover.jpg")
        ).get()

        assert [user.attachmentsCount for user in users] == [1, 0, 0]

    async def test_belongs_to(self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None) -> None:
        posts = await QueryBuilder.for_entity(executor, Post, registry=registry).order_by("id").with_count(
            "author"
        ).get()

        assert [post.authorCount for post in posts] == [1, 1, 1, 1, 0]


class TestColumnAggregates:
    async def test_sum(self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None) -> None:
        users = await _users(executor, registry).with_sum("orders", "amount").get()

        assert [user.ordersAmountSum for user in users] == [30, 5, None]

    async def test_min_max_avg(self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None) -> None:
        users = await (
            _users(executor, registry)
            .with_max("orders", "amount")
            .with_min("orders", "amount")
            .with_avg("orders", "amount")
            .get()
        )

        alice, bob, charlie = users
        assert (alice.ordersAmountMax, alice.ordersAmountMin, alice.ordersAmountAvg) == (20, 10, 15)
        assert (bob.ordersAmountMax, bob.ordersAmountMin) == (5, 5)
        assert charlie.ordersAmountAvg is None
        assert executor.count == 4

    async def test_alongside_eager_loading(
        self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None
    ) -> None:
        alice, _, _ = await _users(executor, registry).with_relations("orders").with_count("orders").get()

        assert len(alice.orders) == alice.ordersCount == 2


class TestErrors:
    async def test_missing_relation(
        self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None
    ) -> None:
        with pytest.raises(RelationNotFoundError, match="No relation 'followers' declared on User"):
            await _users(executor, registry).with_count("followers").get()

    async def test_morph_to_rejected_without_keys(
        self, executor: RecordingExecutor, registry: RelationRegistry
    ) -> None:
        with pytest.raises(UnsupportedRelationError, match="morphTo"):
            await AggregateAttacher(executor, registry).attach(
                [Attachment(id=1)], [AggregateRequest("count", "attachable")]
            )

        assert executor.count == 0

    def test_column_required(self) -> None:
        with pytest.raises(ValueError, match="requires a column"):
            AggregateRequest("sum", "orders")

    def test_unknown_function(self) -> None:
        with pytest.raises(ValueError, match="Unsupported aggregate function"):
            AggregateRequest("median", "orders", "amount")  # type: ignore[arg-type]


class TestAttacherDirect:
    async def test_plain_rows_by_table(
        self, executor: RecordingExecutor, registry: RelationRegistry, seed_data: None
    ) -> None:
        rows = [{"id": 1}, {"id": 2}, {"id": 9}]

        await AggregateAttacher(executor, registry).attach(rows, [AggregateRequest("count", "orders")], owner="users")

        assert [row["ordersCount"] for row in rows] == [2, 1, 0]

    async def test_empty_parents(self, executor: RecordingExecutor, registry: RelationRegistry) -> None:
        await AggregateAttacher(executor, registry).attach([], [AggregateRequest("count", "orders")])

        assert executor.count == 0

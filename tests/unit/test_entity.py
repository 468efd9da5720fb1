from __future__ import annotations

import pytest

from sqla_relquery import Entity, Record

from ..models import Comment, Post, User


class TestRecord:
    def test_from_row(self) -> None:
        user = User.from_row({"id": 1, "name": "alice"})

        assert isinstance(user, User)
        assert user.get_attribute("name") == "alice"
        assert user.get_attribute("missing") is None

    def test_satisfies_entity_protocol(self) -> None:
        assert isinstance(User(), Entity)

    def test_attribute_access(self) -> None:
        user = User({"id": 1}, name="alice")
        user.set_relation("posts", [])

        assert user.name == "alice"
        assert user["id"] == 1
        assert user.posts == []
        assert user.relation_loaded("posts")
        assert not user.relation_loaded("roles")

    def test_attributes_shadow_relations(self) -> None:
        user = User(profile="attribute")
        user.set_relation("profile", "relation")

        assert user.profile == "attribute"
        assert user.get_relation("profile") == "relation"

    def test_unknown_name(self) -> None:
        with pytest.raises(AttributeError, match="no attribute or relation 'nope'"):
            User().nope  # noqa: B018

    def test_to_dict_nests_relations(self) -> None:
        post = Post(id=1)
        post.set_relation("comments", [Comment(id=7)])
        post.set_relation("author", None)

        assert post.to_dict() == {"id": 1, "comments": [{"id": 7}], "author": None}

    def test_paginated_relation_dumps(self) -> None:
        user = User(id=1)
        user.set_relation("posts", {"data": [Post(id=2)], "meta": {"page": 1}})

        assert user.to_dict()["posts"] == {"data": [{"id": 2}], "meta": {"page": 1}}

    def test_equality_by_type_and_attributes(self) -> None:
        assert User(id=1) == User(id=1)
        assert User(id=1) != Post(id=1)
        assert User(id=1) != User(id=2)

    def test_unhashable(self) -> None:
        with pytest.raises(TypeError):
            hash(Record())

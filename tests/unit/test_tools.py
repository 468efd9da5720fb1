from __future__ import annotations

import datetime as dt
import enum
from decimal import Decimal

import pytest

from sqla_relquery.bindings import to_binding, to_bindings
from sqla_relquery.tools import (
    aggregate_attribute,
    check_operator,
    json_literal,
    json_path,
    placeholders,
    quote,
    quote_all,
    studly,
)


class Status(enum.Enum):
    ACTIVE = "active"


class TestQuote:
    def test_plain(self) -> None:
        assert quote("users") == "`users`"

    def test_qualified(self) -> None:
        assert quote("users.id") == "`users`.`id`"

    def test_star_stays_bare(self) -> None:
        assert quote("posts.*") == "`posts`.*"

    def test_already_quoted(self) -> None:
        assert quote("`users`") == "`users`"

    def test_quote_all(self) -> None:
        assert quote_all(["id", "name"]) == "`id`, `name`"


class TestPlaceholders:
    def test_three(self) -> None:
        assert placeholders(3) == "?, ?, ?"

    def test_one(self) -> None:
        assert placeholders(1) == "?"


class TestCheckOperator:
    @pytest.mark.parametrize("op", ["=", ">=", "<>", "like", "not  like"])
    def test_allowed(self, op: str) -> None:
        assert check_operator(op) == " ".join(op.upper().split())

    @pytest.mark.parametrize("op", ["; DROP TABLE users", "==", "IN"])
    def test_rejected(self, op: str) -> None:
        with pytest.raises(ValueError, match="Unsupported comparison operator"):
            check_operator(op)


class TestJson:
    def test_composite_literal(self) -> None:
        assert json_literal({"theme": "dark", "tags": [1, 2]}) == '{"theme":"dark","tags":[1,2]}'

    def test_string_literal(self) -> None:
        assert json_literal("php") == '"php"'

    def test_path(self) -> None:
        assert json_path("settings.theme") == "$.settings.theme"
        assert json_path("$.already") == "$.already"


class TestAttributeNames:
    def test_studly(self) -> None:
        assert studly("unit_price") == "UnitPrice"

    def test_count(self) -> None:
        assert aggregate_attribute("orders", "count") == "ordersCount"

    def test_column_aggregate(self) -> None:
        assert aggregate_attribute("orders", "sum", "amount") == "ordersAmountSum"

    def test_qualified_column(self) -> None:
        assert aggregate_attribute("orders", "max", "orders.unit_price") == "ordersUnitPriceMax"


class TestBindings:
    @pytest.mark.parametrize(
        "value",
        [None, True, 1, 1.5, Decimal("2.50"), "text", b"raw", dt.date(2024, 1, 1), dt.datetime(2024, 1, 1, 12), dt.time(8)],
    )
    def test_scalars_pass_through(self, value: object) -> None:
        assert to_binding(value) == value

    def test_enum_unwrapped(self) -> None:
        assert to_binding(Status.ACTIVE) == "active"

    def test_bytearray_to_bytes(self) -> None:
        assert to_binding(bytearray(b"ab")) == b"ab"

    def test_composite_rejected(self) -> None:
        with pytest.raises(TypeError, match="Unsupported binding type 'dict'"):
            to_binding({"a": 1})

    def test_to_bindings_keeps_order(self) -> None:
        assert to_bindings([3, Status.ACTIVE, None]) == [3, "active", None]

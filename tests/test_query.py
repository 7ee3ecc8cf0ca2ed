"""Query builder tests."""

from __future__ import annotations

import pytest

from kindstore.core.errors import DecodeError, QueryBuildError
from kindstore.datastore.keys import Key
from kindstore.datastore.query import Cursor, Query, decode_cursor


def _property_filter(name: str, op: str, value: dict) -> dict:
    return {"propertyFilter": {"property": {"name": name}, "op": op, "value": value}}


def test_bare_query_renders_kind_only() -> None:
    assert Query("Task").to_wire() == {"kind": [{"name": "Task"}]}


def test_single_filter_is_not_wrapped() -> None:
    doc = Query("Task").filter("Priority >=", 4).to_wire()
    assert doc["filter"] == _property_filter("Priority", "GREATER_THAN_OR_EQUAL", {"integerValue": "4"})


def test_multiple_filters_compose_with_and() -> None:
    doc = Query("Task").filter("Done =", False).filter_field("Owner", "!=", "bob").to_wire()
    assert doc["filter"] == {
        "compositeFilter": {
            "op": "AND",
            "filters": [
                _property_filter("Done", "EQUAL", {"booleanValue": False}),
                _property_filter("Owner", "NOT_EQUAL", {"stringValue": "bob"}),
            ],
        }
    }


@pytest.mark.parametrize(
    ("symbol", "op"),
    [
        ("=", "EQUAL"),
        ("<", "LESS_THAN"),
        ("<=", "LESS_THAN_OR_EQUAL"),
        (">", "GREATER_THAN"),
        (">=", "GREATER_THAN_OR_EQUAL"),
        ("!=", "NOT_EQUAL"),
        ("in", "IN"),
        ("not-in", "NOT_IN"),
    ],
)
def test_operator_symbols(symbol: str, op: str) -> None:
    doc = Query("K").filter_field("p", symbol, 1).to_wire()
    assert doc["filter"]["propertyFilter"]["op"] == op


def test_filter_string_quirks() -> None:
    query = Query("K").filter("malformed", 1).filter("a ~", 2)
    assert len(query.filters) == 1
    assert query.filters[0].operator == "EQUAL"
    assert Query("K").filter_field("a", "CUSTOM_OP", 1).filters[0].operator == "CUSTOM_OP"


def test_in_filter_takes_an_array_operand() -> None:
    doc = Query("K").filter_field("tag", "in", ["a", "b"]).to_wire()
    assert doc["filter"]["propertyFilter"]["value"] == {
        "arrayValue": {"values": [{"stringValue": "a"}, {"stringValue": "b"}]}
    }


def test_unencodable_operand_fails_at_build_time() -> None:
    with pytest.raises(QueryBuildError):
        Query("K").filter("p =", {"not": "supported"})


def test_ancestor_is_and_composed_after_filters() -> None:
    parent = Key.name_key("List", "groceries")
    only_ancestor = Query("Item").ancestor(parent).to_wire()
    assert only_ancestor["filter"] == _property_filter("__key__", "HAS_ANCESTOR", {"keyValue": parent.to_wire()})

    doc = Query("Item").filter("done =", True).ancestor(parent).to_wire()
    filters = doc["filter"]["compositeFilter"]["filters"]
    assert filters[0] == _property_filter("done", "EQUAL", {"booleanValue": True})
    assert filters[1]["propertyFilter"]["op"] == "HAS_ANCESTOR"


def test_order_direction_prefix() -> None:
    doc = Query("K").order("-created").order("name").to_wire()
    assert doc["order"] == [
        {"property": {"name": "created"}, "direction": "DESCENDING"},
        {"property": {"name": "name"}, "direction": "ASCENDING"},
    ]


def test_projection_and_distinct_snapshot() -> None:
    query = Query("K").project("a", "b").distinct().project("a", "b", "c")
    doc = query.to_wire()
    assert [item["property"]["name"] for item in doc["projection"]] == ["a", "b", "c"]
    assert doc["distinctOn"] == [{"property": {"name": "a"}}, {"property": {"name": "b"}}]
    assert Query("K").distinct_on("x").to_wire()["distinctOn"] == [{"property": {"name": "x"}}]


def test_distinct_without_projection_keeps_distinct_on() -> None:
    doc = Query("K").distinct_on("a").distinct().to_wire()
    assert doc["distinctOn"] == [{"property": {"name": "a"}}]
    assert "distinctOn" not in Query("K").distinct().to_wire()


def test_keys_only_projects_the_key() -> None:
    query = Query("K").keys_only()
    assert query.is_keys_only
    assert query.to_wire()["projection"] == [{"property": {"name": "__key__"}}]


def test_limit_offset_and_cursors_only_when_set() -> None:
    assert "limit" not in Query("K").limit(0).to_wire()
    doc = Query("K").limit(5).offset(2).start(Cursor("abc")).end("xyz").to_wire()
    assert doc["limit"] == 5
    assert doc["offset"] == 2
    assert doc["startCursor"] == "abc"
    assert doc["endCursor"] == "xyz"


def test_namespace_goes_to_partition() -> None:
    query = Query("K").namespace("tenant")
    assert query.namespace_id == "tenant"
    assert query.partition() == {"namespaceId": "tenant"}
    assert "namespace" not in query.to_wire()
    assert Query("K").partition() is None


def test_clone_is_independent() -> None:
    original = Query("K").filter("a =", 1).limit(3)
    copy = original.clone().filter("b =", 2).limit(9)
    assert len(original.filters) == 1
    assert original.to_wire()["limit"] == 3
    assert len(copy.filters) == 2


def test_cursor_decoding() -> None:
    assert decode_cursor("Cg") == "Cg"
    with pytest.raises(DecodeError):
        decode_cursor("")

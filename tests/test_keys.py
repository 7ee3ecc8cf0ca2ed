"""Key codec tests."""

from __future__ import annotations

import pytest

from kindstore.core.errors import InvalidKeyError, KeyDecodeError
from kindstore.datastore.keys import Key, PathElement, decode_key


def test_wire_form_uses_string_ids_and_namespace() -> None:
    parent = Key.name_key("Org", "acme", namespace="tenant-a")
    child = Key.id_key("User", 12, parent=parent)
    assert child.namespace == "tenant-a"
    assert child.to_wire() == {
        "path": [{"kind": "Org", "name": "acme"}, {"kind": "User", "id": "12"}],
        "partitionId": {"namespaceId": "tenant-a"},
    }
    assert Key.from_wire(child.to_wire()) == child


def test_default_namespace_is_omitted() -> None:
    assert "partitionId" not in Key.name_key("K", "x").to_wire()


def test_incomplete_key_has_no_identifier() -> None:
    key = Key.incomplete_key("Task")
    assert key.incomplete
    assert key.to_wire() == {"path": [{"kind": "Task"}]}
    assert key.with_id(99) == Key.id_key("Task", 99)


def test_incomplete_ancestor_is_rejected() -> None:
    with pytest.raises(InvalidKeyError):
        Key.name_key("Child", "c", parent=Key.incomplete_key("Parent"))
    with pytest.raises(InvalidKeyError):
        Key((PathElement("Parent"), PathElement("Child", name="c")))


def test_element_cannot_have_name_and_id() -> None:
    with pytest.raises(InvalidKeyError):
        PathElement("K", name="a", id=1)


def test_zero_id_and_empty_name_mean_incomplete() -> None:
    assert PathElement("K", id=0).incomplete
    assert PathElement("K", name="").incomplete


@pytest.mark.parametrize("raw_id", ["42", 42, 42.0])
def test_id_accepts_string_and_number(raw_id: object) -> None:
    key = Key.from_wire({"path": [{"kind": "K", "id": raw_id}]})
    assert key.id == 42


@pytest.mark.parametrize(
    "doc",
    [
        {"path": []},
        {},
        {"path": [{"kind": "K", "id": "abc"}]},
        {"path": [{"kind": "K", "id": 1.5}]},
        {"path": [{"kind": "K", "id": str(2**63)}]},
        {"path": [{"kind": "K", "name": "a", "id": "1"}]},
        {"path": [{"kind": "A"}, {"kind": "B", "id": "1"}]},
        "not-a-key",
    ],
)
def test_malformed_key_documents_fail(doc: object) -> None:
    with pytest.raises(KeyDecodeError):
        Key.from_wire(doc)


def test_parent_and_ancestry() -> None:
    root = Key.id_key("A", 1)
    leaf = Key.name_key("C", "z", parent=Key.name_key("B", "y", parent=root))
    assert leaf.parent is not None and leaf.parent.kind == "B"
    assert root.is_ancestor_of(leaf)
    assert not leaf.is_ancestor_of(root)
    assert not root.is_ancestor_of(root)
    assert root.parent is None


def test_string_form_is_readable() -> None:
    key = Key.id_key("B", 7, parent=Key.name_key("A", "x"), namespace="ns")
    assert str(key) == '[ns]/A,"x"/B,7'
    assert str(Key.incomplete_key("T")) == "/T,incomplete"


def test_encoded_key_round_trips() -> None:
    key = Key.name_key("Doc", "a/b c", parent=Key.id_key("Folder", 3), namespace="n1")
    encoded = key.encode()
    assert "/" not in encoded and "+" not in encoded
    assert decode_key(encoded) == key
    assert decode_key(encoded.rstrip("=")) == key


@pytest.mark.parametrize("encoded", ["", "!!!", "bm90LWpzb24"])
def test_decode_key_rejects_garbage(encoded: str) -> None:
    with pytest.raises(KeyDecodeError):
        decode_key(encoded)


def test_keys_are_hashable_for_correlation() -> None:
    first = Key.name_key("K", "a")
    same = Key.from_wire({"path": [{"kind": "K", "name": "a"}]})
    assert {first: 1}[same] == 1

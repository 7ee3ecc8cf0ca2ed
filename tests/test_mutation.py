"""Mutation assembly tests."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from kindstore.core.errors import InvalidEntityTypeError, InvalidKeyError
from kindstore.datastore.keys import Key
from kindstore.datastore.mutation import Mutation, build_mutations, commit_body


@dataclass
class Note:
    text: str = ""


def test_each_operation_renders_its_document() -> None:
    key = Key.name_key("Note", "n1")
    rendered = build_mutations(
        [
            Mutation.insert(key, Note("a")),
            Mutation.update(key, Note("b")),
            Mutation.upsert(key, Note("c")),
            Mutation.delete(key),
        ]
    )
    assert [next(iter(doc)) for doc in rendered] == ["insert", "update", "upsert", "delete"]
    assert rendered[0]["insert"] == {"key": key.to_wire(), "properties": {"text": {"stringValue": "a"}}}
    assert rendered[3] == {"delete": key.to_wire()}


def test_missing_key_fails_with_index() -> None:
    with pytest.raises(InvalidKeyError, match="index 1"):
        build_mutations([Mutation.delete(Key.id_key("Note", 1)), Mutation.upsert(None, Note())])


def test_missing_entity_fails_with_index() -> None:
    with pytest.raises(InvalidEntityTypeError, match="index 0"):
        build_mutations([Mutation.insert(Key.id_key("Note", 1), None)])


def test_none_mutation_is_rejected() -> None:
    with pytest.raises(InvalidEntityTypeError):
        build_mutations([None])


def test_commit_body_modes() -> None:
    assert commit_body([]) == {"mode": "NON_TRANSACTIONAL", "mutations": []}
    assert commit_body([{"delete": {}}], transaction="tx-1") == {
        "mode": "TRANSACTIONAL",
        "transaction": "tx-1",
        "mutations": [{"delete": {}}],
    }

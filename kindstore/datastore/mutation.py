"""Mutation objects and commit request assembly."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Sequence

from kindstore.core.errors import InvalidEntityTypeError, InvalidKeyError
from kindstore.datastore.keys import Key
from kindstore.datastore.records import encode_entity
from kindstore.datastore.values import DEFAULT_MAX_DEPTH

NON_TRANSACTIONAL = "NON_TRANSACTIONAL"
TRANSACTIONAL = "TRANSACTIONAL"


class MutationOp(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class Mutation:
    """A single write to be committed alongside others."""

    op: MutationOp
    key: Key | None
    entity: Any = None

    @classmethod
    def insert(cls, key: Key | None, entity: Any) -> "Mutation":
        """Create; the commit fails if the entity already exists."""
        return cls(MutationOp.INSERT, key, entity)

    @classmethod
    def update(cls, key: Key | None, entity: Any) -> "Mutation":
        """Replace; the commit fails if the entity does not exist."""
        return cls(MutationOp.UPDATE, key, entity)

    @classmethod
    def upsert(cls, key: Key | None, entity: Any) -> "Mutation":
        return cls(MutationOp.UPSERT, key, entity)

    @classmethod
    def delete(cls, key: Key | None) -> "Mutation":
        return cls(MutationOp.DELETE, key)

    def to_wire(self, max_depth: int = DEFAULT_MAX_DEPTH) -> dict[str, Any]:
        if self.key is None:
            raise InvalidKeyError("mutation has no key")
        if self.op is MutationOp.DELETE:
            return {self.op.value: self.key.to_wire()}
        if self.entity is None:
            raise InvalidEntityTypeError(f"{self.op.value} mutation has no entity")
        return {self.op.value: encode_entity(self.key, self.entity, max_depth=max_depth)}


def build_mutations(mutations: Sequence[Mutation | None], max_depth: int = DEFAULT_MAX_DEPTH) -> list[dict[str, Any]]:
    """Render every mutation, failing on the first invalid one with its index."""
    rendered = []
    for index, mutation in enumerate(mutations):
        if mutation is None:
            raise InvalidEntityTypeError(f"mutation at index {index} is None")
        if mutation.key is None:
            raise InvalidKeyError(f"mutation at index {index} has no key")
        if mutation.op is not MutationOp.DELETE and mutation.entity is None:
            raise InvalidEntityTypeError(f"mutation at index {index} has no entity")
        rendered.append(mutation.to_wire(max_depth))
    return rendered


def commit_body(mutations: list[dict[str, Any]], transaction: str | None = None) -> dict[str, Any]:
    """Commit request document; a transaction handle switches the mode."""
    if transaction:
        return {"mode": TRANSACTIONAL, "transaction": transaction, "mutations": mutations}
    return {"mode": NON_TRANSACTIONAL, "mutations": mutations}


__all__ = [
    "Mutation",
    "MutationOp",
    "NON_TRANSACTIONAL",
    "TRANSACTIONAL",
    "build_mutations",
    "commit_body",
]

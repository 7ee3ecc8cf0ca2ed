"""Read-write and read-only transactions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

from kindstore.core.errors import InvalidEntityTypeError, InvalidKeyError, TransactionError
from kindstore.core.logging import get_logger
from kindstore.datastore.keys import Key
from kindstore.datastore.mutation import Mutation, build_mutations, commit_body
from kindstore.models.dto import CommitResponse, RollbackResponse

if TYPE_CHECKING:
    from kindstore.datastore.client import Client

logger = get_logger(__name__)


class Transaction:
    """Reads go through the transaction snapshot; writes are buffered until :meth:`commit`."""

    def __init__(self, client: "Client", transaction_id: str) -> None:
        self._client = client
        self.id = transaction_id
        self._mutations: list[Mutation] = []
        self._finished = False

    @property
    def pending(self) -> int:
        return len(self._mutations)

    def _ensure_open(self) -> None:
        if self._finished:
            raise TransactionError("transaction has already been committed or rolled back")

    def _read_options(self) -> dict[str, Any]:
        return {"transaction": self.id}

    def get(self, key: Key | None, cls: type | None = None) -> Any:
        self._ensure_open()
        return self._client._get_one(key, cls, read_options=self._read_options())

    def get_multi(self, keys: Sequence[Key | None], cls: type | None = None) -> list[Any]:
        self._ensure_open()
        return self._client._get_many(keys, cls, read_options=self._read_options())

    def put(self, key: Key | None, entity: Any) -> None:
        """Buffer an upsert; incomplete keys are completed at commit time."""
        self.mutate(Mutation.upsert(key, entity))

    def put_multi(self, keys: Sequence[Key | None], entities: Sequence[Any]) -> None:
        if len(keys) != len(entities):
            raise InvalidEntityTypeError(f"keys and entities length mismatch: {len(keys)} != {len(entities)}")
        self.mutate(*(Mutation.upsert(key, entity) for key, entity in zip(keys, entities)))

    def delete(self, key: Key | None) -> None:
        if key is None:
            raise InvalidKeyError("key cannot be None")
        self.mutate(Mutation.delete(key))

    def delete_multi(self, keys: Sequence[Key | None]) -> None:
        self.mutate(*(Mutation.delete(key) for key in keys))

    def mutate(self, *mutations: Mutation) -> None:
        self._ensure_open()
        # validate now so a bad mutation fails at the call site, not at commit
        build_mutations(mutations, self._client.max_depth)
        self._mutations.extend(mutations)

    def commit(self) -> list[Key]:
        """Apply buffered mutations atomically; returns the (completed) key of each."""
        self._ensure_open()
        rendered = build_mutations(self._mutations, self._client.max_depth)
        response = self._client._post("commit", commit_body(rendered, self.id), CommitResponse)
        self._finished = True
        keys = self._client._completed_keys([mutation.key for mutation in self._mutations], response)
        logger.debug("transaction committed", extra={"ctx_count": len(rendered)})
        self._mutations = []
        return keys

    def rollback(self) -> None:
        """Discard buffered mutations and release the transaction on the backend."""
        self._ensure_open()
        self._mutations = []
        self._finished = True
        self._client._post("rollback", {"transaction": self.id}, RollbackResponse)


__all__ = ["Transaction"]

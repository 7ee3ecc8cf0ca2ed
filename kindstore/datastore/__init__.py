"""Entity codec, query builder and client for the Datastore REST API."""

from .keys import Key, PathElement, decode_key
from .values import decode_value, encode_value
from .records import decode_entity, encode_entity, prop
from .query import Cursor, Query, decode_cursor
from .iterator import Iterator
from .mutation import Mutation
from .transaction import Transaction
from .client import Client
from kindstore.utils.time import Timestamp

__all__ = [
    "Client",
    "Cursor",
    "Iterator",
    "Key",
    "Mutation",
    "PathElement",
    "Query",
    "Timestamp",
    "Transaction",
    "decode_cursor",
    "decode_entity",
    "decode_key",
    "decode_value",
    "encode_entity",
    "encode_value",
    "prop",
]

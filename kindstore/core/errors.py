"""Exception hierarchy shared by the codec, client and emulator."""

from __future__ import annotations

from typing import Any, Iterator, Sequence


class KindstoreError(Exception):
    """Base class for every error raised by kindstore."""


class InvalidKeyError(KindstoreError):
    """A key was missing, malformed or incomplete where a complete key is required."""


class InvalidEntityTypeError(KindstoreError):
    """The destination or source value is not a dataclass record."""


class NoSuchEntityError(KindstoreError):
    """No entity exists for the requested key."""

    def __init__(self, key: Any = None) -> None:
        self.key = key
        super().__init__(f"no such entity: {key}" if key is not None else "no such entity")


class _PathError(KindstoreError):
    """Error that records the field path where it happened.

    Path segments are prepended while the error unwinds through nested
    records, so the rendered message reads outermost field first.
    """

    def __init__(self, message: str, path: Sequence[str] = ()) -> None:
        self.message = message
        self.path: list[str] = list(path)
        super().__init__(message)

    def add_context(self, segment: str | int) -> None:
        self.path.insert(0, f"[{segment}]" if isinstance(segment, int) else str(segment))

    @property
    def location(self) -> str:
        rendered = ""
        for segment in self.path:
            if segment.startswith("[") or not rendered:
                rendered += segment
            else:
                rendered += f".{segment}"
        return rendered

    def __str__(self) -> str:
        location = self.location
        return f"{location}: {self.message}" if location else self.message


class EncodeError(_PathError):
    """A native value could not be converted to a typed property value."""


class UnsupportedTypeError(EncodeError):
    """The native value has no property-value counterpart."""

    def __init__(self, type_name: str, path: Sequence[str] = ()) -> None:
        self.type_name = type_name
        super().__init__(f"unsupported type {type_name}", path)


class RecursionLimitExceeded(EncodeError):
    """Record nesting went deeper than the configured limit."""


class DecodeError(_PathError):
    """A wire document could not be converted into the destination type."""


class TypeMismatchError(DecodeError):
    """The wire variant is not assignable to the destination type."""


class KeyDecodeError(DecodeError):
    """A key document or encoded key string is malformed."""


class QueryBuildError(KindstoreError):
    """A query could not be rendered, typically because of a bad filter operand."""


class CursorUnavailableError(KindstoreError):
    """The iterator has not observed any cursor yet."""

    def __init__(self) -> None:
        super().__init__("no cursor available")


class Done(KindstoreError):
    """Iteration is exhausted."""

    def __init__(self) -> None:
        super().__init__("no more items in iterator")


class TransportError(KindstoreError):
    """The backend could not be reached or answered with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @property
    def aborted(self) -> bool:
        return self.status_code == 409 or "ABORTED" in self.body


class AuthError(KindstoreError):
    """An access token could not be obtained."""


class TransactionError(KindstoreError):
    """The transaction was used after it finished, or could not be committed."""


class TransactionAbortedError(TransactionError):
    """Every attempt of a retried transaction was aborted by the backend."""


class MultiError(KindstoreError):
    """Per-index outcome of a batch call.

    ``errors[i]`` is ``None`` when index ``i`` succeeded, in which case
    ``results[i]`` holds the decoded value.
    """

    def __init__(self, errors: Sequence[BaseException | None], results: Sequence[Any] | None = None) -> None:
        self.errors: list[BaseException | None] = list(errors)
        self.results: list[Any] = list(results) if results is not None else [None] * len(self.errors)
        failed = [err for err in self.errors if err is not None]
        if not failed:
            message = "(0 errors)"
        elif len(failed) == 1:
            message = str(failed[0])
        else:
            message = f"{failed[0]} (and {len(failed) - 1} other errors)"
        super().__init__(message)

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self) -> Iterator[BaseException | None]:
        return iter(self.errors)

    def __getitem__(self, index: int) -> BaseException | None:
        return self.errors[index]


__all__ = [
    "AuthError",
    "CursorUnavailableError",
    "DecodeError",
    "Done",
    "EncodeError",
    "InvalidEntityTypeError",
    "InvalidKeyError",
    "KeyDecodeError",
    "KindstoreError",
    "MultiError",
    "NoSuchEntityError",
    "QueryBuildError",
    "RecursionLimitExceeded",
    "TransactionAbortedError",
    "TransactionError",
    "TransportError",
    "TypeMismatchError",
    "UnsupportedTypeError",
]

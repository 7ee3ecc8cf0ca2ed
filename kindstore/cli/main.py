"""CLI entrypoint for kindstore."""

from __future__ import annotations

import base64
import json
from datetime import datetime
from typing import Any, Callable, List, Optional, TypeVar

import typer

from kindstore.core.config import Settings, get_settings
from kindstore.core.errors import KindstoreError
from kindstore.core.logging import configure_logging
from kindstore.datastore.client import Client
from kindstore.datastore.keys import Key, decode_key
from kindstore.datastore.query import Query
from kindstore.utils.time import Timestamp

app = typer.Typer(name="kindstore", help="Inspect and edit Datastore entities")
key_app = typer.Typer(name="key", help="Encode and decode keys")
app.add_typer(key_app, name="key")

T = TypeVar("T")


def _project_option() -> Any:
    return typer.Option(None, "--project", help="Project ID (defaults to config or metadata server)")


def _database_option() -> Any:
    return typer.Option(None, "--database", help="Named database ID")


def _emulator_option() -> Any:
    return typer.Option(None, "--emulator-host", help="host:port of a running emulator")


def _namespace_option() -> Any:
    return typer.Option("", "--namespace", "-n", help="Namespace of the entities")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log requests at DEBUG level")) -> None:
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level, use_json=settings.log_json)


def _settings(emulator_host: Optional[str]) -> Settings:
    settings = get_settings()
    if emulator_host:
        return settings.model_copy(update={"emulator_host": emulator_host})
    return settings


def _client(project: Optional[str], database: Optional[str], emulator_host: Optional[str]) -> Client:
    return _run(lambda: Client(project_id=project, database_id=database, settings=_settings(emulator_host)))


def _run(fn: Callable[[], T]) -> T:
    try:
        return fn()
    except KindstoreError as exc:
        typer.echo(f"Request failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _key(kind: str, identifier: str, namespace: str) -> Key:
    if identifier.isdigit():
        return Key.id_key(kind, int(identifier), namespace=namespace)
    return Key.name_key(kind, identifier, namespace=namespace)


def _value(text: str) -> Any:
    """Filter operands are JSON literals; anything else is taken as a string."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (Key, Timestamp)):
        return str(value)
    raise TypeError(f"cannot serialise {type(value).__name__}")


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=_json_default))


def _build_query(kind: str, namespace: str, filters: List[str]) -> Query:
    query = Query(kind).namespace(namespace)
    for text in filters:
        parts = text.split(maxsplit=2)
        if len(parts) != 3:
            typer.echo(f"Invalid filter {text!r}; expected 'property op value'", err=True)
            raise typer.Exit(code=2)
        name, op, raw = parts
        _run(lambda: query.filter_field(name, op, _value(raw)))
    return query


@app.command()
def get(
    kind: str = typer.Argument(..., help="Entity kind"),
    identifier: str = typer.Argument(..., help="Key name, or numeric ID"),
    namespace: str = _namespace_option(),
    project: Optional[str] = _project_option(),
    database: Optional[str] = _database_option(),
    emulator_host: Optional[str] = _emulator_option(),
) -> None:
    """Print one entity."""
    key = _key(kind, identifier, namespace)
    with _client(project, database, emulator_host) as client:
        entity = _run(lambda: client.get(key))
    _echo({"key": str(key), "properties": entity})


@app.command()
def query(
    kind: str = typer.Argument(..., help="Entity kind"),
    filters: List[str] = typer.Option([], "--filter", "-f", help="Filter as 'property op value'"),
    orders: List[str] = typer.Option([], "--order", "-o", help="Property to order by; prefix '-' for descending"),
    limit: int = typer.Option(0, "--limit", help="Maximum number of results (0 = no limit)"),
    keys_only: bool = typer.Option(False, "--keys-only", help="Only print keys"),
    namespace: str = _namespace_option(),
    project: Optional[str] = _project_option(),
    database: Optional[str] = _database_option(),
    emulator_host: Optional[str] = _emulator_option(),
) -> None:
    """Run a query and print the matching entities."""
    built = _build_query(kind, namespace, filters)
    for order in orders:
        built.order(order)
    if limit:
        built.limit(limit)
    if keys_only:
        built.keys_only()
    with _client(project, database, emulator_host) as client:
        keys, entities = _run(lambda: client.get_all(built))
    if keys_only:
        _echo([str(key) for key in keys])
    else:
        _echo([{"key": str(key), "properties": entity} for key, entity in zip(keys, entities)])


@app.command()
def count(
    kind: str = typer.Argument(..., help="Entity kind"),
    filters: List[str] = typer.Option([], "--filter", "-f", help="Filter as 'property op value'"),
    namespace: str = _namespace_option(),
    project: Optional[str] = _project_option(),
    database: Optional[str] = _database_option(),
    emulator_host: Optional[str] = _emulator_option(),
) -> None:
    """Count entities matching the filters."""
    built = _build_query(kind, namespace, filters)
    with _client(project, database, emulator_host) as client:
        total = _run(lambda: client.count(built))
    _echo({"kind": kind, "count": total})


@app.command()
def delete(
    kind: str = typer.Argument(..., help="Entity kind"),
    identifier: Optional[str] = typer.Argument(None, help="Key name or numeric ID"),
    all_entities: bool = typer.Option(False, "--all", help="Delete every entity of the kind"),
    namespace: str = _namespace_option(),
    project: Optional[str] = _project_option(),
    database: Optional[str] = _database_option(),
    emulator_host: Optional[str] = _emulator_option(),
) -> None:
    """Delete one entity, or every entity of a kind with --all."""
    if identifier is None and not all_entities:
        typer.echo("Pass an identifier or --all", err=True)
        raise typer.Exit(code=2)
    with _client(project, database, emulator_host) as client:
        if all_entities:
            deleted = _run(lambda: client.delete_all_by_kind(kind, namespace))
            _echo({"status": "ok", "deleted": deleted})
            return
        key = _key(kind, identifier or "", namespace)
        _run(lambda: client.delete(key))
    _echo({"status": "ok", "deleted": 1})


@key_app.command("encode")
def encode_key(
    kind: str = typer.Argument(..., help="Entity kind"),
    identifier: str = typer.Argument(..., help="Key name, or numeric ID"),
    namespace: str = _namespace_option(),
) -> None:
    """Print the opaque url-safe form of a key."""
    typer.echo(_key(kind, identifier, namespace).encode())


@key_app.command("decode")
def decode(encoded: str = typer.Argument(..., help="Output of 'kindstore key encode'")) -> None:
    """Print the path form of an encoded key."""
    key = _run(lambda: decode_key(encoded))
    _echo({"key": str(key), "wire": key.to_wire()})


if __name__ == "__main__":
    app()

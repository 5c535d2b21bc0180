from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from dateutil import parser as dtparse
from sqlalchemy import (Table, and_, bindparam, delete, insert, select, text,
                        update)
from sqlalchemy.engine import Connection, CursorResult, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.base import Executable

from .exceptions import (MalformedDocumentError, SchemaError, StorageError,
                         StorageWriteError, TypeMismatchError)
from .models import PersisterOptions
from .query import in_clause
from .resolver import MetadataResolver
from .schema import EntityDescriptor, FieldDescriptor, FieldKind, RelationKind
from .schema_builder import SchemaBuilder

LOGGER = logging.getLogger("json_persister.persistence")

Bind = Union[Engine, Connection]


def _is_array(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def _describe_value(value: Any) -> str:
    preview = repr(value)
    if len(preview) > 80:
        preview = preview[:77] + "..."
    return f"{preview} of type {type(value).__name__}"


def _mismatch(field: FieldDescriptor, value: Any) -> TypeMismatchError:
    return TypeMismatchError(
        f"Value {_describe_value(value)} at {field.owner}.{field.name} "
        f"cannot be converted to {field.value_type}",
        {"entity": field.owner, "field": field.name, "value_type": field.value_type},
    )


def _as_integer(field: FieldDescriptor, value: Any) -> int:
    if isinstance(value, bool):
        raise _mismatch(field, value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise _mismatch(field, value)


def _as_number(field: FieldDescriptor, value: Any) -> Union[float, Decimal]:
    if isinstance(value, bool):
        raise _mismatch(field, value)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
    raise _mismatch(field, value)


def _as_boolean(field: FieldDescriptor, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    raise _mismatch(field, value)


def _as_datetime(field: FieldDescriptor, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return dtparse.isoparse(value)
        except ValueError:
            try:
                return dtparse.parse(value)
            except (ValueError, OverflowError):
                pass
    raise _mismatch(field, value)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def convert_scalar(field: FieldDescriptor, value: Any) -> Any:
    """Convert a JSON value into the Python type declared for ``field``."""
    if value is None:
        return None
    if isinstance(value, Mapping) or _is_array(value):
        raise MalformedDocumentError(
            f"{field.owner}.{field.name} expects a scalar, got {type(value).__name__}",
            {"entity": field.owner, "field": field.name},
        )

    value_type = field.value_type
    if value_type is None:
        return value
    if value_type == "integer":
        return _as_integer(field, value)
    if value_type == "number":
        return _as_number(field, value)
    if value_type == "boolean":
        return _as_boolean(field, value)
    if value_type == "datetime":
        return _as_datetime(field, value)
    return _as_text(value)


def _warn_if_blocking_event_loop(method_name: str) -> None:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return
    LOGGER.warning(
        "Don't call %s from a running event loop; it blocks until the transaction ends",
        method_name,
    )


@dataclass
class _CollectionMapping:
    """A foreign collection found in a document, processed after the owner row."""

    field: FieldDescriptor
    document_key: str
    items: Optional[Sequence[Any]]


class JsonPersister:
    """Persist JSON documents and their nested relations in a single transaction.

    Each call to :meth:`persist_object` or :meth:`persist_array` either commits
    every row it touched or none of them.
    """

    def __init__(
        self,
        bind: Bind,
        resolver: MetadataResolver,
        options: Optional[PersisterOptions] = None,
    ) -> None:
        self._bind = bind
        self._resolver = resolver
        self._options = options or PersisterOptions()
        self._tables = SchemaBuilder(resolver)
        self._tables_lock = threading.Lock()

    @property
    def options(self) -> PersisterOptions:
        return self._options

    def persist_object(self, entity_type: str, document: Mapping[str, Any]) -> Any:
        """Persist ``document`` and its nested graph, returning its identity."""
        _warn_if_blocking_event_loop("persist_object()")
        with self._transaction() as conn:
            return self._persist_object(conn, entity_type, document)

    def persist_array(
        self, entity_type: str, documents: Sequence[Mapping[str, Any]]
    ) -> List[Any]:
        """Persist every document in order, returning identities in input order."""
        _warn_if_blocking_event_loop("persist_array()")
        if not _is_array(documents):
            raise MalformedDocumentError(
                f"Expected an array of {entity_type} objects, got {type(documents).__name__}",
                {"entity": entity_type},
            )
        with self._transaction() as conn:
            return self._persist_array(conn, entity_type, documents)

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            if isinstance(self._bind, Connection):
                if self._bind.in_transaction():
                    raise StorageError(
                        "Connection already has an open transaction; commit or roll it back first"
                    )
                with self._bind.begin():
                    yield self._bind
            else:
                with self._bind.begin() as conn:
                    yield conn
        except BaseException:
            LOGGER.debug("Transaction rolled back")
            raise
        LOGGER.debug("Transaction committed")

    def _persist_array(
        self, conn: Connection, entity_type: str, documents: Sequence[Any]
    ) -> List[Any]:
        identities: List[Any] = []
        for index, document in enumerate(documents):
            if not isinstance(document, Mapping):
                raise MalformedDocumentError(
                    f"Item {index} of the {entity_type} array is not an object",
                    {"entity": entity_type, "index": index},
                )
            identities.append(self._persist_object(conn, entity_type, document))
        return identities

    def _persist_object(
        self, conn: Connection, entity_type: str, document: Mapping[str, Any]
    ) -> Any:
        if not isinstance(document, Mapping):
            raise MalformedDocumentError(
                f"Expected a {entity_type} object, got {type(document).__name__}",
                {"entity": entity_type},
            )
        descriptor = self._resolver.describe(entity_type)

        staged: Dict[str, Any] = {}
        collections: List[_CollectionMapping] = []
        identity_field: Optional[FieldDescriptor] = None
        identity_value: Any = None

        for key, value in document.items():
            field = self._resolver.field_for(entity_type, key)
            if field is None:
                if not self._options.disable_ignored_attributes_warning:
                    LOGGER.warning(
                        "Ignored attribute %s because it wasn't found in %s",
                        key,
                        entity_type,
                    )
                continue

            if field.kind is FieldKind.IDENTITY:
                if identity_field is not None:
                    raise MalformedDocumentError(
                        f"Trying to set the identity of {entity_type} twice (key {key})",
                        {"entity": entity_type, "key": key},
                    )
                identity_field = field
                identity_value = value
            elif field.kind is FieldKind.FOREIGN_COLLECTION:
                if value is not None and not _is_array(value):
                    raise MalformedDocumentError(
                        f"{entity_type}.{field.name} expects an array, got {type(value).__name__}",
                        {"entity": entity_type, "field": field.name},
                    )
                collections.append(_CollectionMapping(field, key, value))
            elif field.kind is FieldKind.FOREIGN_REFERENCE:
                staged[field.column_name] = self._reference_value(conn, field, value)
            else:
                staged[field.column_name] = convert_scalar(field, value)

        id_column, identity = self._resolve_identity(
            conn, descriptor, identity_field, identity_value
        )

        if staged:
            table = self._table(entity_type)
            self._execute(
                conn,
                update(table).where(table.c[id_column] == identity).values(**staged),
                descriptor.table_name,
            )

        LOGGER.debug("Imported %s (%s=%s)", entity_type, id_column, identity)

        for mapping in collections:
            if mapping.items is None:
                LOGGER.warning(
                    "Mapping %s for %s was null; existing relation left untouched",
                    mapping.document_key,
                    entity_type,
                )
                continue
            if mapping.field.relation is RelationKind.MANY_TO_MANY:
                self._sync_many_to_many(conn, entity_type, identity, mapping)
            else:
                self._sync_one_to_many(conn, entity_type, identity, mapping)

        return identity

    def _table(self, entity_type: str) -> Table:
        with self._tables_lock:
            return self._tables.build_table(entity_type)

    def _reference_value(
        self, conn: Connection, field: FieldDescriptor, value: Any
    ) -> Any:
        if value is None:
            return None
        if field.target is None:
            raise SchemaError(
                f"{field.owner}.{field.name} does not declare a target type",
                {"entity": field.owner, "field": field.name},
            )
        if isinstance(value, Mapping):
            # Inline object: persist it first and point at its identity.
            return self._persist_object(conn, field.target, value)
        if _is_array(value):
            raise MalformedDocumentError(
                f"{field.owner}.{field.name} expects an object or an identity, got an array",
                {"entity": field.owner, "field": field.name},
            )
        return convert_scalar(self._resolver.identity_field(field.target), value)

    def _resolve_identity(
        self,
        conn: Connection,
        descriptor: EntityDescriptor,
        field: Optional[FieldDescriptor],
        value: Any,
    ) -> Tuple[str, Any]:
        table_name = descriptor.table_name
        table = self._table(descriptor.entity_type)

        if field is None or value is None:
            id_field = self._resolver.identity_field(descriptor.entity_type)
            result = self._insert(conn, insert(table), table_name)
            return id_field.column_name, convert_scalar(
                id_field, result.inserted_primary_key[0]
            )

        identity = convert_scalar(field, value)
        id_column = field.column_name
        existing = self._execute(
            conn,
            select(table.c[id_column]).where(table.c[id_column] == identity).limit(1),
            table_name,
            write=False,
        ).first()
        if existing is None:
            self._insert(conn, insert(table).values(**{id_column: identity}), table_name)
            LOGGER.debug("Prepared %s row (%s=%s)", table_name, id_column, identity)
        return id_column, identity

    def _sync_many_to_many(
        self,
        conn: Connection,
        owner_type: str,
        owner_id: Any,
        mapping: _CollectionMapping,
    ) -> None:
        field = mapping.field
        junction = field.target
        link_target = field.link_target
        if junction is None or link_target is None:
            raise SchemaError(
                f"{owner_type}.{field.name} needs a junction and a target type",
                {"entity": owner_type, "field": field.name},
            )

        target_pointer = self._resolver.first_field_of_type(junction, link_target)
        if target_pointer is None:
            raise SchemaError(
                f"No field of type {link_target} found in {junction}",
                {"entity": junction, "target": link_target},
            )
        owner_pointer = self._resolver.foreign_field(junction, owner_type)
        if owner_pointer is None:
            raise SchemaError(
                f"No foreign field pointing at {owner_type} found in {junction}",
                {"entity": junction, "target": owner_type},
            )

        target_ids = self._persist_array(conn, link_target, mapping.items or [])

        table = self._table(junction)
        owner_column = owner_pointer.column_name
        target_column = target_pointer.column_name

        self._execute(
            conn,
            delete(table).where(table.c[owner_column] == owner_id),
            table.name,
        )
        for target_id in target_ids:
            self._insert(
                conn,
                insert(table).values(**{owner_column: owner_id, target_column: target_id}),
                table.name,
            )

    def _sync_one_to_many(
        self,
        conn: Connection,
        owner_type: str,
        owner_id: Any,
        mapping: _CollectionMapping,
    ) -> None:
        field = mapping.field
        target = field.target
        if target is None:
            raise SchemaError(
                f"{owner_type}.{field.name} does not declare a target type",
                {"entity": owner_type, "field": field.name},
            )

        descriptor = self._resolver.describe(target)
        target_identity = self._resolver.identity_field(target)
        owner_pointer = self._resolver.foreign_field(target, owner_type)
        if owner_pointer is None:
            raise SchemaError(
                f"No foreign field pointing at {owner_type} found in {target}",
                {"entity": target, "target": owner_type},
            )

        items = mapping.items or []
        if field.value_column:
            target_ids = self._persist_scalars(conn, descriptor, field.value_column, items)
        else:
            target_ids = self._persist_array(conn, target, items)

        table = self._table(target)
        id_column = table.c[target_identity.column_name]
        owner_column = table.c[owner_pointer.column_name]
        quote = conn.dialect.identifier_preparer.quote
        clause = in_clause(target_ids)
        # IN parameters carry the identity column type so they encode like stored values.
        params = [
            bindparam(name, value, type_=id_column.type)
            for name, value in clause.params.items()
        ]

        if target_ids:
            self._execute(
                conn,
                update(table)
                .where(text(f"{quote(id_column.name)} {clause.selector}").bindparams(*params))
                .values(**{owner_column.key: owner_id}),
                table.name,
            )

        if self._options.disable_foreign_collection_cleanup:
            return

        # Remove rows that no longer belong to this owner; other owners' rows stay.
        stale = and_(
            text(f"{quote(id_column.name)} NOT {clause.selector}").bindparams(*params),
            owner_column == owner_id,
        )
        result = self._execute(conn, delete(table).where(stale), table.name)
        if result.rowcount:
            LOGGER.debug(
                "Removed %s stale %s rows of %s=%s",
                result.rowcount,
                target,
                owner_column.name,
                owner_id,
            )

    def _persist_scalars(
        self,
        conn: Connection,
        descriptor: EntityDescriptor,
        value_column: str,
        items: Sequence[Any],
    ) -> List[Any]:
        id_field = descriptor.identity
        value_field = descriptor.field_by_column(value_column)
        table = self._table(descriptor.entity_type)

        identities: List[Any] = []
        for item in items:
            if isinstance(item, Mapping) or _is_array(item):
                raise MalformedDocumentError(
                    f"{descriptor.entity_type} stores single values in {value_column}, "
                    f"got {type(item).__name__}",
                    {"entity": descriptor.entity_type, "column": value_column},
                )
            value = convert_scalar(value_field, item) if value_field is not None else item
            result = self._insert(
                conn, insert(table).values(**{value_column: value}), table.name
            )
            identities.append(convert_scalar(id_field, result.inserted_primary_key[0]))
        return identities

    def _insert(self, conn: Connection, statement: Executable, table_name: str) -> CursorResult:
        result = self._execute(conn, statement, table_name)
        if result.rowcount == 0:
            raise StorageWriteError(
                f"Insert into {table_name} did not create a row", {"table": table_name}
            )
        return result

    @staticmethod
    def _execute(
        conn: Connection,
        statement: Executable,
        table_name: str,
        write: bool = True,
    ) -> CursorResult:
        try:
            return conn.execute(statement)
        except SQLAlchemyError as exc:
            error = StorageWriteError if write else StorageError
            raise error(
                f"Statement on {table_name} failed: {exc}", {"table": table_name}
            ) from exc

"""Persist nested JSON documents into relational tables."""

from .exceptions import (JsonPathError, JsonPersisterError,
                         MalformedDocumentError, SchemaError, StorageError,
                         StorageWriteError, TypeMismatchError)
from .models import PersisterOptions
from .persistence import JsonPersister
from .resolver import MetadataResolver
from .schema import (EntityRegistry, entity, identity, many_to_many,
                     one_to_many, reference, scalar)

__all__ = [
    "EntityRegistry",
    "JsonPathError",
    "JsonPersister",
    "JsonPersisterError",
    "MalformedDocumentError",
    "MetadataResolver",
    "PersisterOptions",
    "SchemaError",
    "StorageError",
    "StorageWriteError",
    "TypeMismatchError",
    "entity",
    "identity",
    "many_to_many",
    "one_to_many",
    "reference",
    "scalar",
]

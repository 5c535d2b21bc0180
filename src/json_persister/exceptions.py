"""Exception hierarchy raised by the JSON persister."""

from __future__ import annotations

from typing import Any, Dict, Optional


class JsonPersisterError(Exception):
    """Base exception for all persister errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


class SchemaError(JsonPersisterError):
    """A type lacks table/identity metadata or a related field cannot be found."""


class TypeMismatchError(JsonPersisterError):
    """A document value cannot be converted to the declared field type."""


class MalformedDocumentError(JsonPersisterError):
    """The document structure does not match the declared fields."""


class StorageError(JsonPersisterError):
    """The relational store reported a failure."""


class StorageWriteError(StorageError):
    """An insert, update or delete statement failed."""


class JsonPathError(MalformedDocumentError):
    """A dotted path does not lead to the expected object or array."""

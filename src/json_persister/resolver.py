"""Cached lookups of entity and field metadata.

Field lookups dominate CPU time when documents carry hundreds of nested
entities, so every answer, including a miss, is memoised for the lifetime of
the resolver.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Hashable, Optional, Tuple, TypeVar

from .exceptions import SchemaError
from .schema import EntityDescriptor, EntityRegistry, FieldDescriptor

LOGGER = logging.getLogger("json_persister.resolver")

T = TypeVar("T")

_MISSING = object()


class MetadataResolver:
    """Resolve and cache table, identity and field metadata per entity type."""

    def __init__(self, registry: EntityRegistry) -> None:
        self._registry = registry
        self._lock = threading.RLock()
        self._lineages: Dict[str, Tuple[str, ...]] = {}
        self._descriptors: Dict[str, EntityDescriptor] = {}
        self._fields_by_key: Dict[Tuple[str, str], Optional[FieldDescriptor]] = {}
        self._identity_fields: Dict[str, Optional[FieldDescriptor]] = {}
        self._fields_by_type: Dict[Tuple[str, str], Optional[FieldDescriptor]] = {}
        self._foreign_fields: Dict[Tuple[str, str], Optional[FieldDescriptor]] = {}

    @property
    def registry(self) -> EntityRegistry:
        return self._registry

    def reset(self) -> None:
        """Drop every cached answer."""
        with self._lock:
            self._lineages.clear()
            self._descriptors.clear()
            self._fields_by_key.clear()
            self._identity_fields.clear()
            self._fields_by_type.clear()
            self._foreign_fields.clear()

    def _memoize(self, cache: Dict, key: Hashable, compute: Callable[[], T]) -> T:
        value = cache.get(key, _MISSING)
        if value is not _MISSING:
            return value
        with self._lock:
            value = cache.get(key, _MISSING)
            if value is _MISSING:
                value = compute()
                cache[key] = value
        return value

    def lineage(self, entity_type: str) -> Tuple[str, ...]:
        return self._memoize(
            self._lineages, entity_type, lambda: self._registry.lineage(entity_type)
        )

    def describe(self, entity_type: str) -> EntityDescriptor:
        return self._memoize(
            self._descriptors, entity_type, lambda: self._build_descriptor(entity_type)
        )

    def _build_descriptor(self, entity_type: str) -> EntityDescriptor:
        declaration = self._registry.get(entity_type)
        if declaration is None or declaration.abstract:
            raise SchemaError(
                f"Table mapping not found for {entity_type}", {"entity": entity_type}
            )

        fields: Dict[str, FieldDescriptor] = {}
        lineage = self.lineage(entity_type)
        for name in lineage:
            for field in self._registry.declaration(name).fields:
                fields.setdefault(field.name, field)

        descriptor = EntityDescriptor(
            entity_type=entity_type,
            table_name=declaration.table or declaration.name,
            fields=tuple(fields.values()),
            identity=self.identity_field(entity_type),
            lineage=lineage,
        )
        LOGGER.debug(
            "Resolved %s -> table %s (%s fields)",
            entity_type,
            descriptor.table_name,
            len(descriptor.fields),
        )
        return descriptor

    def field_for(self, entity_type: str, document_key: str) -> Optional[FieldDescriptor]:
        """Find the field a document key maps onto, or ``None``.

        Each type in the lineage is checked for a direct name match first and
        a ``map_from`` match second before moving on to its bases.
        """
        return self._memoize(
            self._fields_by_key,
            (entity_type, document_key),
            lambda: self._find_field(entity_type, document_key),
        )

    def _find_field(self, entity_type: str, document_key: str) -> Optional[FieldDescriptor]:
        for name in self.lineage(entity_type):
            fields = self._registry.declaration(name).fields
            for field in fields:
                if field.name == document_key:
                    return field
            for field in fields:
                if field.map_from == document_key:
                    return field
        return None

    def identity_field(self, entity_type: str) -> FieldDescriptor:
        field = self._memoize(
            self._identity_fields,
            entity_type,
            lambda: self._first_matching(entity_type, lambda f: f.is_identity),
        )
        if field is None:
            raise SchemaError(
                f"{entity_type} does not declare an identity field",
                {"entity": entity_type},
            )
        return field

    def first_field_of_type(
        self, entity_type: str, target_type: str
    ) -> Optional[FieldDescriptor]:
        """First foreign reference in ``entity_type`` that targets ``target_type``."""
        return self._memoize(
            self._fields_by_type,
            (entity_type, target_type),
            lambda: self._first_matching(
                entity_type, lambda f: f.is_reference and f.target == target_type
            ),
        )

    def foreign_field(
        self, source_type: str, points_at_type: str
    ) -> Optional[FieldDescriptor]:
        """Foreign reference in ``source_type`` whose target is ``points_at_type``.

        A reference to a subtype of ``points_at_type`` matches as well.
        """
        return self._memoize(
            self._foreign_fields,
            (source_type, points_at_type),
            lambda: self._first_matching(
                source_type,
                lambda f: f.is_reference and self._is_assignable(f.target, points_at_type),
            ),
        )

    def _is_assignable(self, candidate: Optional[str], expected: str) -> bool:
        if candidate is None:
            return False
        if candidate == expected:
            return True
        if candidate not in self._registry:
            return False
        return expected in self.lineage(candidate)

    def _first_matching(
        self, entity_type: str, predicate: Callable[[FieldDescriptor], bool]
    ) -> Optional[FieldDescriptor]:
        for name in self.lineage(entity_type):
            for field in self._registry.declaration(name).fields:
                if predicate(field):
                    return field
        return None

from __future__ import annotations

import logging
from typing import Dict, Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Integer,
                        MetaData, Numeric, Table, Text)

from .resolver import MetadataResolver
from .schema import FieldDescriptor

LOGGER = logging.getLogger("json_persister.schema")


def map_type(value_type: Optional[str]):
    if value_type == "integer":
        # SQLite only auto-assigns INTEGER PRIMARY KEY columns.
        return Integer
    if value_type == "number":
        return Numeric
    if value_type == "boolean":
        return Boolean
    if value_type == "datetime":
        return DateTime(timezone=True)
    return Text


class SchemaBuilder:
    """Build SQLAlchemy tables for every concrete entity in a registry."""

    def __init__(self, resolver: MetadataResolver) -> None:
        self.resolver = resolver
        self.metadata = MetaData()
        self.tables: Dict[str, Table] = {}

    def build(self) -> MetaData:
        for declaration in self.resolver.registry:
            if declaration.abstract:
                continue
            self.build_table(declaration.name)
        return self.metadata

    def build_table(self, entity_type: str) -> Table:
        descriptor = self.resolver.describe(entity_type)
        existing = self.metadata.tables.get(descriptor.table_name)
        if existing is not None:
            self.tables[entity_type] = existing
            return existing

        columns = []
        for field in descriptor.column_fields:
            columns.append(self._column(field))

        table = Table(descriptor.table_name, self.metadata, *columns)
        self.tables[entity_type] = table
        LOGGER.debug("Built table %s for %s", table.name, entity_type)
        return table

    def _column(self, field: FieldDescriptor) -> Column:
        if field.is_identity:
            return Column(
                field.column_name,
                map_type(field.value_type),
                primary_key=True,
                autoincrement=field.value_type == "integer",
            )

        if field.is_reference and field.target is not None:
            target = self.resolver.describe(field.target)
            return Column(
                field.column_name,
                map_type(target.identity.value_type),
                ForeignKey(f"{target.table_name}.{target.identity.column_name}"),
                nullable=field.nullable,
                index=True,
            )

        return Column(field.column_name, map_type(field.value_type), nullable=field.nullable)


def build_metadata(resolver: MetadataResolver) -> MetaData:
    return SchemaBuilder(resolver).build()

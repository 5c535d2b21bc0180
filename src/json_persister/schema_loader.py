"""Load entity declarations from YAML.

A schema file lists entities by name::

    entities:
      User:
        table: users
        fields:
          - {name: id, kind: identity, type: integer}
          - {name: name, kind: scalar, type: text, map_from: fullName}
          - {name: group, kind: reference, target: Group}
          - {name: tags, kind: one_to_many, target: UserTag, value_column: value}
          - {name: groups, kind: many_to_many, junction: UserGroup, target: Group}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import SchemaError
from .schema import (EntityDeclaration, EntityRegistry, FieldDescriptor,
                     entity, identity, many_to_many, one_to_many, reference,
                     scalar)

LOGGER = logging.getLogger("json_persister.schema")

ValueTypeName = Literal["integer", "number", "boolean", "text", "datetime"]


class FieldModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    kind: Literal["identity", "scalar", "reference", "one_to_many", "many_to_many"]
    type: Optional[ValueTypeName] = None
    column: Optional[str] = None
    map_from: Optional[str] = None
    target: Optional[str] = None
    junction: Optional[str] = None
    value_column: Optional[str] = None
    nullable: bool = True

    @model_validator(mode="after")
    def _check_relation(self) -> "FieldModel":
        if self.kind in {"reference", "one_to_many", "many_to_many"} and not self.target:
            raise ValueError(f"{self.kind} field {self.name!r} needs a target")
        if self.kind == "many_to_many" and not self.junction:
            raise ValueError(f"many_to_many field {self.name!r} needs a junction")
        if self.value_column and self.kind != "one_to_many":
            raise ValueError(f"value_column is only valid on one_to_many fields ({self.name!r})")
        return self

    def to_descriptor(self) -> FieldDescriptor:
        if self.kind == "identity":
            return identity(
                self.name,
                value_type=self.type or "integer",
                column=self.column,
                map_from=self.map_from,
            )
        if self.kind == "scalar":
            return scalar(
                self.name,
                value_type=self.type,
                column=self.column,
                map_from=self.map_from,
                nullable=self.nullable,
            )
        if self.kind == "reference":
            return reference(
                self.name,
                self.target,
                column=self.column,
                map_from=self.map_from,
                nullable=self.nullable,
            )
        if self.kind == "one_to_many":
            return one_to_many(
                self.name,
                self.target,
                value_column=self.value_column,
                map_from=self.map_from,
            )
        return many_to_many(self.name, self.junction, self.target, map_from=self.map_from)


class EntityModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table: Optional[str] = None
    bases: List[str] = Field(default_factory=list)
    abstract: bool = False
    fields: List[FieldModel] = Field(default_factory=list)


class SchemaDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entities: Dict[str, EntityModel]


def parse_declarations(data: Mapping[str, Any]) -> List[EntityDeclaration]:
    try:
        document = SchemaDocument.model_validate(data)
    except ValidationError as exc:
        raise SchemaError(f"Invalid schema declaration: {exc}") from exc

    return [
        entity(
            name,
            *(f.to_descriptor() for f in model.fields),
            table=model.table,
            bases=model.bases,
            abstract=model.abstract,
        )
        for name, model in document.entities.items()
    ]


def load_registry(data: Mapping[str, Any]) -> EntityRegistry:
    registry = EntityRegistry(parse_declarations(data))
    LOGGER.debug("Loaded %s entity declarations", len(registry))
    return registry


def load_schema(source: str) -> EntityRegistry:
    """Build a registry from YAML text."""
    try:
        data = yaml.safe_load(source)
    except yaml.YAMLError as exc:
        raise SchemaError(f"Schema is not valid YAML: {exc}") from exc
    if not isinstance(data, Mapping):
        raise SchemaError("Schema document must be a mapping with an 'entities' key")
    return load_registry(data)


def load_schema_file(path: Union[str, Path]) -> EntityRegistry:
    path = Path(path)
    try:
        source = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SchemaError(f"Cannot read schema file {path}: {exc}", {"path": str(path)}) from exc
    LOGGER.info("Loading entity declarations from %s", path)
    return load_schema(source)

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .exceptions import SchemaError

ValueType = str  # "integer" | "number" | "boolean" | "text" | "datetime"

VALUE_TYPES = ("integer", "number", "boolean", "text", "datetime")
FOREIGN_ID_SUFFIX = "_id"


class FieldKind(str, Enum):
    IDENTITY = "identity"
    SCALAR = "scalar"
    FOREIGN_REFERENCE = "foreign_reference"
    FOREIGN_COLLECTION = "foreign_collection"


class RelationKind(str, Enum):
    ONE_TO_MANY = "one_to_many"
    MANY_TO_MANY = "many_to_many"


@dataclass(frozen=True)
class FieldDescriptor:
    """Metadata for one declared field of an entity type."""

    name: str
    kind: FieldKind
    column_name: str
    value_type: Optional[ValueType] = None
    target: Optional[str] = None
    relation: Optional[RelationKind] = None
    link_target: Optional[str] = None
    value_column: Optional[str] = None
    map_from: Optional[str] = None
    nullable: bool = True
    owner: str = ""

    @property
    def is_identity(self) -> bool:
        return self.kind is FieldKind.IDENTITY

    @property
    def is_reference(self) -> bool:
        return self.kind is FieldKind.FOREIGN_REFERENCE

    @property
    def is_collection(self) -> bool:
        return self.kind is FieldKind.FOREIGN_COLLECTION

    @property
    def has_column(self) -> bool:
        return self.kind is not FieldKind.FOREIGN_COLLECTION


@dataclass
class EntityDeclaration:
    """Declared mapping of one entity type, as supplied by the metadata source."""

    name: str
    fields: List[FieldDescriptor] = field(default_factory=list)
    table: Optional[str] = None
    bases: Tuple[str, ...] = ()
    abstract: bool = False

    def __post_init__(self) -> None:
        # Fields are declared without knowing their owner; stamp it once here.
        self.fields = [
            f if f.owner == self.name else _with_owner(f, self.name)
            for f in self.fields
        ]
        seen: set[str] = set()
        for f in self.fields:
            if f.name in seen:
                raise SchemaError(
                    f"Field {f.name!r} declared twice on {self.name}",
                    {"entity": self.name, "field": f.name},
                )
            seen.add(f.name)


@dataclass(frozen=True)
class EntityDescriptor:
    """Resolved table mapping for a registered entity type."""

    entity_type: str
    table_name: str
    fields: Tuple[FieldDescriptor, ...]
    identity: FieldDescriptor
    lineage: Tuple[str, ...]

    @property
    def column_fields(self) -> Tuple[FieldDescriptor, ...]:
        return tuple(f for f in self.fields if f.has_column)

    def field_by_column(self, column_name: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.has_column and f.column_name == column_name:
                return f
        return None


def _with_owner(descriptor: FieldDescriptor, owner: str) -> FieldDescriptor:
    return replace(descriptor, owner=owner)


def _check_value_type(value_type: Optional[ValueType]) -> None:
    if value_type is not None and value_type not in VALUE_TYPES:
        raise SchemaError(
            f"Unsupported value type {value_type!r}; expected one of {', '.join(VALUE_TYPES)}"
        )


def identity(
    name: str = "id",
    value_type: ValueType = "integer",
    column: Optional[str] = None,
    map_from: Optional[str] = None,
) -> FieldDescriptor:
    _check_value_type(value_type)
    return FieldDescriptor(
        name=name,
        kind=FieldKind.IDENTITY,
        column_name=column or name,
        value_type=value_type,
        map_from=map_from,
        nullable=False,
    )


def scalar(
    name: str,
    value_type: Optional[ValueType] = None,
    column: Optional[str] = None,
    map_from: Optional[str] = None,
    nullable: bool = True,
) -> FieldDescriptor:
    _check_value_type(value_type)
    return FieldDescriptor(
        name=name,
        kind=FieldKind.SCALAR,
        column_name=column or name,
        value_type=value_type,
        map_from=map_from,
        nullable=nullable,
    )


def reference(
    name: str,
    target: str,
    column: Optional[str] = None,
    map_from: Optional[str] = None,
    nullable: bool = True,
) -> FieldDescriptor:
    return FieldDescriptor(
        name=name,
        kind=FieldKind.FOREIGN_REFERENCE,
        column_name=column or f"{name}{FOREIGN_ID_SUFFIX}",
        target=target,
        map_from=map_from,
        nullable=nullable,
    )


def one_to_many(
    name: str,
    target: str,
    value_column: Optional[str] = None,
    map_from: Optional[str] = None,
) -> FieldDescriptor:
    """Collection of ``target`` rows that point back at the owner.

    With ``value_column`` the document holds bare scalars and every item is
    stored in that column of a fresh ``target`` row.
    """
    return FieldDescriptor(
        name=name,
        kind=FieldKind.FOREIGN_COLLECTION,
        column_name=name,
        target=target,
        relation=RelationKind.ONE_TO_MANY,
        value_column=value_column,
        map_from=map_from,
    )


def many_to_many(
    name: str,
    junction: str,
    target: str,
    map_from: Optional[str] = None,
) -> FieldDescriptor:
    """Collection realised through ``junction`` rows linking the owner to ``target``."""
    return FieldDescriptor(
        name=name,
        kind=FieldKind.FOREIGN_COLLECTION,
        column_name=name,
        target=junction,
        relation=RelationKind.MANY_TO_MANY,
        link_target=target,
        map_from=map_from,
    )


def entity(
    name: str,
    *fields: FieldDescriptor,
    table: Optional[str] = None,
    bases: Iterable[str] = (),
    abstract: bool = False,
) -> EntityDeclaration:
    return EntityDeclaration(
        name=name,
        fields=list(fields),
        table=table,
        bases=tuple(bases),
        abstract=abstract,
    )


class EntityRegistry:
    """Holds the entity declarations known to a resolver."""

    def __init__(self, declarations: Iterable[EntityDeclaration] = ()) -> None:
        self._declarations: Dict[str, EntityDeclaration] = {}
        for declaration in declarations:
            self.register(declaration)

    def register(self, declaration: EntityDeclaration) -> EntityDeclaration:
        if declaration.name in self._declarations:
            raise SchemaError(
                f"Entity {declaration.name} is already registered",
                {"entity": declaration.name},
            )
        self._declarations[declaration.name] = declaration
        return declaration

    def get(self, name: str) -> Optional[EntityDeclaration]:
        return self._declarations.get(name)

    def declaration(self, name: str) -> EntityDeclaration:
        declaration = self._declarations.get(name)
        if declaration is None:
            raise SchemaError(
                f"Entity {name} is not registered",
                {"entity": name, "available_entities": list(self._declarations)},
            )
        return declaration

    def lineage(self, name: str) -> Tuple[str, ...]:
        """Return ``name`` followed by its bases, depth-first in declared order."""
        ordered: List[str] = []

        def visit(current: str, trail: Tuple[str, ...]) -> None:
            if current in trail:
                raise SchemaError(
                    f"Inheritance cycle through {current}",
                    {"entity": name, "cycle": list(trail + (current,))},
                )
            declaration = self.declaration(current)
            if current not in ordered:
                ordered.append(current)
            for base in declaration.bases:
                visit(base, trail + (current,))

        visit(name, ())
        return tuple(ordered)

    def __contains__(self, name: object) -> bool:
        return name in self._declarations

    def __iter__(self) -> Iterator[EntityDeclaration]:
        return iter(self._declarations.values())

    def __len__(self) -> int:
        return len(self._declarations)

"""
Core type definitions for the docgraph schema system.

This module defines the resolved form of a schema:
- PrimitiveKind: Scalar field kinds
- Primitive / EntityRef / EntityRefList: The closed FieldType variant
- Entity: A resolved schema node bound to one store collection

Entities form a graph that may contain cycles (an Entity can reference
itself directly or through other Entities). Equality is identity and repr
never follows references, so cyclic graphs are safe to compare and print.

Invariants:
    - One Entity per distinct config node, shared by reference
    - cascade only names relation fields
    - FieldType is exactly one of Primitive, EntityRef, EntityRefList

Example:
    >>> from docgraph.schema.types import PrimitiveKind
    >>> PrimitiveKind.from_str("date")
    <PrimitiveKind.DATE: 'date'>
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterator, Tuple, Union

if TYPE_CHECKING:
    from ..store.base import CollectionHandle, StoreHandle


class PrimitiveKind(Enum):
    """Supported scalar field kinds.

    These map to runtime type checks in the validator.
    """

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"  # Coerced from ISO strings and epoch milliseconds
    BINARY = "binary"
    OBJECT = "object"  # Any mapping, contents not checked
    ARRAY = "array"  # Any list, elements not checked
    ANY = "any"  # Not checked at all

    @classmethod
    def from_str(cls, value: str) -> PrimitiveKind:
        """Convert string representation to PrimitiveKind.

        Raises:
            ValueError: If value is not a valid kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")

    @classmethod
    def from_python_type(cls, value: type) -> PrimitiveKind:
        """Map a Python type used as a declaration to its kind.

        Raises:
            ValueError: If the type has no kind
        """
        kind = _PYTHON_TYPES.get(value)
        if kind is None:
            raise ValueError(f"No field kind for Python type {value!r}")
        return kind


_PYTHON_TYPES: Dict[Any, PrimitiveKind] = {
    str: PrimitiveKind.STRING,
    int: PrimitiveKind.NUMBER,
    float: PrimitiveKind.NUMBER,
    bool: PrimitiveKind.BOOLEAN,
    datetime: PrimitiveKind.DATE,
    date: PrimitiveKind.DATE,
    bytes: PrimitiveKind.BINARY,
    dict: PrimitiveKind.OBJECT,
    list: PrimitiveKind.ARRAY,
    object: PrimitiveKind.ANY,
    Any: PrimitiveKind.ANY,
}


@dataclass(frozen=True)
class Primitive:
    """Scalar field of a given kind."""

    kind: PrimitiveKind


@dataclass(frozen=True, eq=False)
class EntityRef:
    """Field holding one nested item of another Entity."""

    entity: Entity

    def __repr__(self) -> str:
        return f"EntityRef({self.entity.name})"


@dataclass(frozen=True, eq=False)
class EntityRefList:
    """Field holding a list of nested items of another Entity."""

    entity: Entity

    def __repr__(self) -> str:
        return f"EntityRefList({self.entity.name})"


FieldType = Union[Primitive, EntityRef, EntityRefList]
Relation = Union[EntityRef, EntityRefList]


@dataclass(eq=False)
class Entity:
    """Resolved schema node bound to one physical collection.

    Attributes:
        name: Collection name in the store
        fields: Field name to FieldType
        cascade: Field name to ownership flag (True = nested items are
            deleted/pruned with the owner)
        store: Open store handle (possibly shared with other Entities)
        collection: Handle of the collection named ``name``
    """

    name: str
    store: StoreHandle
    fields: Dict[str, FieldType] = field(default_factory=dict)
    cascade: Dict[str, bool] = field(default_factory=dict)
    collection: CollectionHandle = field(init=False)

    def __post_init__(self) -> None:
        self.collection = self.store.get_collection(self.name)

    def __repr__(self) -> str:
        return f"Entity(name={self.name!r}, fields={list(self.fields)})"

    def relations(self) -> Iterator[Tuple[str, Relation]]:
        """Yield ``(field_name, relation)`` for every relation field."""
        for name, field_type in self.fields.items():
            if isinstance(field_type, (EntityRef, EntityRefList)):
                yield name, field_type

    def owns(self, field_name: str) -> bool:
        """Whether nested items of ``field_name`` are owned by this Entity."""
        return bool(self.cascade.get(field_name))

    def related_entities(self) -> Iterator[Entity]:
        for _, relation in self.relations():
            yield relation.entity

"""
Schema module for docgraph.

This module provides the type system for entity graphs, including:
- Resolved types (Entity, FieldType variants, PrimitiveKind)
- The resolver that turns config trees into Entity graphs
- The YAML/JSON schema file format

Invariants:
    - Each distinct config node resolves to exactly one Entity
    - Field types are fixed once resolution completes

How to change safely:
    - Add new primitive kinds to PrimitiveKind and the validator together
    - Keep schema_format names in sync with PrimitiveKind values
"""

from .resolver import ResolutionMemo, resolve_schema
from .schema_format import load_schema, load_schema_file, parse_schema
from .types import (
    Entity,
    EntityRef,
    EntityRefList,
    FieldType,
    Primitive,
    PrimitiveKind,
)

__all__ = [
    # Types
    "Entity",
    "EntityRef",
    "EntityRefList",
    "FieldType",
    "Primitive",
    "PrimitiveKind",
    # Resolution
    "ResolutionMemo",
    "resolve_schema",
    # File format
    "load_schema",
    "load_schema_file",
    "parse_schema",
]

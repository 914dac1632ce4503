"""
docgraph - CRUD over graphs of related document collections.

An application describes its entities as a (possibly cyclic) tree of config
nodes. docgraph resolves the tree into an Entity graph bound to document
store collections and exposes a Collection per Entity that can create,
read, update, delete, search and load items together with their nested
items.

Example:
    >>> from datetime import datetime
    >>> from docgraph import open_collection, SearchOptions
    >>>
    >>> todo = {"name": "Todos", "connection": "memory://app", "fields": {}}
    >>> todo["fields"] = {"title": str, "createdOn": datetime, "childTodos": [todo]}
    >>> todo["cascade"] = {"childTodos": True}
    >>>
    >>> todos = await open_collection(todo)
    >>> created = await todos.create({
    ...     "title": "Chores",
    ...     "childTodos": [{"title": "Wash Clothes"}],
    ... })
    >>> await todos.read(created["id"])
    >>> await todos.search(
    ...     [[{"field": "title", "operator": "CONTAINS", "value": "wash"}]],
    ...     SearchOptions(items_per_page=10),
    ... )
"""

from .collection import Collection, SearchOptions, SearchResult, open_collection
from .config import Settings, get_settings, setup_logging
from .errors import (
    AggregateError,
    ConfigurationError,
    DocGraphError,
    DocumentNotFoundError,
    FieldTypeError,
    InvalidIdentifierError,
    InvalidItemError,
    InvalidQueryFieldError,
    InvalidQueryOperatorError,
    InvalidQueryStructureError,
    InvalidQueryValueError,
    Operation,
    StoreConnectionError,
    StoreOperationError,
)
from .query import Condition, QueryOperator
from .schema import (
    Entity,
    EntityRef,
    EntityRefList,
    Primitive,
    PrimitiveKind,
    load_schema,
    load_schema_file,
    parse_schema,
    resolve_schema,
)
from .store import MemoryStore, SqliteStore, connect_store

__version__ = "0.1.0"

__all__ = [
    # CRUD
    "Collection",
    "SearchOptions",
    "SearchResult",
    "open_collection",
    # Schema
    "Entity",
    "EntityRef",
    "EntityRefList",
    "Primitive",
    "PrimitiveKind",
    "resolve_schema",
    "load_schema",
    "load_schema_file",
    "parse_schema",
    # Queries
    "Condition",
    "QueryOperator",
    # Stores
    "connect_store",
    "MemoryStore",
    "SqliteStore",
    # Configuration
    "Settings",
    "get_settings",
    "setup_logging",
    # Errors
    "DocGraphError",
    "ConfigurationError",
    "FieldTypeError",
    "InvalidItemError",
    "InvalidIdentifierError",
    "InvalidQueryStructureError",
    "InvalidQueryFieldError",
    "InvalidQueryOperatorError",
    "InvalidQueryValueError",
    "StoreOperationError",
    "DocumentNotFoundError",
    "StoreConnectionError",
    "AggregateError",
    "Operation",
]

"""
Document store abstraction for docgraph.

This package provides the store contract the CRUD layer talks to, plus:
- In-memory backend (``memory://name``) for tests and local development
- SQLite backend (``sqlite:///path.db``) for persistent single-node use

Invariants:
    - Every backend evaluates the same filter dialect (see matcher.py)
    - Identifiers cross the public API as strings via parse_id/format_id

How to change safely:
    - New backends must implement StoreHandle and CollectionHandle
    - Run the store unit tests against every backend
"""

from .base import (
    ASCENDING,
    DESCENDING,
    CollectionHandle,
    Cursor,
    DuplicateIdError,
    StoreClosedError,
    StoreError,
    StoreHandle,
    connect_store,
)
from .memory import MemoryStore, drop_memory_database
from .sqlite import SqliteStore

__all__ = [
    # Protocol and types
    "StoreHandle",
    "CollectionHandle",
    "Cursor",
    "ASCENDING",
    "DESCENDING",
    "StoreError",
    "StoreClosedError",
    "DuplicateIdError",
    # Factory
    "connect_store",
    # Implementations
    "MemoryStore",
    "SqliteStore",
    "drop_memory_database",
]

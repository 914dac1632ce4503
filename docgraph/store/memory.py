"""
In-memory document store for testing and local development.

Databases are kept in a process-wide registry keyed by name, so every handle
opened on ``memory://<name>`` sees the same documents, the way several
clients connected to one database server would.

Invariants:
    - All data is lost on process exit (or drop_memory_database())
    - Native ids are positive integers, increasing per collection
    - Stored documents are deep-copied on the way in and out

Concurrency:
    No operation awaits while touching shared state, so each call is atomic
    with respect to other coroutines on the event loop.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .base import (
    Cursor,
    Document,
    DuplicateIdError,
    Filter,
    Projection,
    StoreClosedError,
)
from .matcher import matches

logger = logging.getLogger(__name__)


@dataclass
class _CollectionData:
    """Documents of one collection, in insertion order."""
    documents: Dict[int, Document] = field(default_factory=dict)
    next_id: int = 1


_DATABASES: Dict[str, Dict[str, _CollectionData]] = {}


def drop_memory_database(name: str) -> None:
    """Forget every collection of a named in-memory database (testing helper)."""
    _DATABASES.pop(name, None)


class MemoryCollection:
    """Collection handle over an in-memory database."""

    def __init__(self, store: MemoryStore, name: str) -> None:
        self.name = name
        self._store = store

    def _data(self) -> _CollectionData:
        return self._store._database().setdefault(self.name, _CollectionData())

    async def _fetch(self) -> List[Document]:
        return [
            {**copy.deepcopy(doc), "_id": doc_id}
            for doc_id, doc in self._data().documents.items()
        ]

    def _matching_ids(self, filter: Filter) -> List[int]:
        return [
            doc_id
            for doc_id, doc in self._data().documents.items()
            if matches({**doc, "_id": doc_id}, filter)
        ]

    def find(self, filter: Filter, projection: Projection = None) -> Cursor:
        self._store._check_open()
        return Cursor(self._fetch, filter, projection)

    async def count(self, filter: Filter) -> int:
        self._store._check_open()
        return len(self._matching_ids(filter))

    async def insert_one(self, document: Document) -> int:
        self._store._check_open()
        data = self._data()
        body = copy.deepcopy(dict(document))
        doc_id = body.pop("_id", None)

        if doc_id is None:
            doc_id = data.next_id
        elif not isinstance(doc_id, int) or isinstance(doc_id, bool) or doc_id <= 0:
            raise DuplicateIdError(f"Invalid _id for {self.name}: {doc_id!r}")
        elif doc_id in data.documents:
            raise DuplicateIdError(f"Duplicate _id {doc_id} in {self.name}")

        data.documents[doc_id] = body
        data.next_id = max(data.next_id, doc_id + 1)

        logger.debug(
            "Document inserted",
            extra={"collection": self.name, "doc_id": doc_id},
        )
        return doc_id

    async def update_one(
        self,
        filter: Filter,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Optional[Sequence[str]] = None,
    ) -> int:
        self._store._check_open()
        matched = self._matching_ids(filter)
        if not matched:
            return 0

        body = self._data().documents[matched[0]]
        for key, value in (set_fields or {}).items():
            body[key] = copy.deepcopy(value)
        for key in unset_fields or ():
            body.pop(key, None)
        return 1

    async def remove(self, filter: Filter) -> int:
        self._store._check_open()
        data = self._data()
        matched = self._matching_ids(filter)
        for doc_id in matched:
            del data.documents[doc_id]
        return len(matched)

    # Testing helpers

    def document_count(self) -> int:
        return len(self._data().documents)


class MemoryStore:
    """In-memory implementation of StoreHandle.

    Example:
        >>> store = MemoryStore("example")
        >>> await store.connect()
        >>> todos = store.get_collection("Todos")
        >>> doc_id = await todos.insert_one({"title": "Wash Clothes"})
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.descriptor = f"memory://{name}"
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (attaches to the named database, creating it if needed)."""
        _DATABASES.setdefault(self.name, {})
        self._connected = True

    async def close(self) -> None:
        """Close the handle; documents stay available to other handles."""
        if not self._connected:
            logger.debug("MemoryStore already closed", extra={"store": self.name})
            return
        self._connected = False
        logger.debug("MemoryStore closed", extra={"store": self.name})

    def get_collection(self, name: str) -> MemoryCollection:
        return MemoryCollection(self, name)

    def parse_id(self, value: str) -> int:
        if not isinstance(value, str) or not value.isdigit():
            raise ValueError(f"Not a memory store id: {value!r}")
        return int(value)

    def format_id(self, native_id: Any) -> str:
        return str(native_id)

    def _database(self) -> Dict[str, _CollectionData]:
        return _DATABASES.setdefault(self.name, {})

    def _check_open(self) -> None:
        if not self._connected:
            raise StoreClosedError(f"Store {self.descriptor} is closed")

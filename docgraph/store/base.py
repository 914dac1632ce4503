"""
Base protocol and types for the document store abstraction.

This module defines the contract every store backend implements, the
Cursor returned by ``find()``, backend error types, and the
``connect_store()`` factory that dispatches on the descriptor scheme.

Filters use the Mongo-style dialect produced by the query compiler and
evaluated by ``docgraph.store.matcher``. Documents carry their native
identifier under ``_id``.

Invariants:
    - parse_id(format_id(x)) == x for every native id the backend issues
    - find() never returns documents from another collection
    - Native ids issued by the bundled backends increase monotonically,
      so sorting by ``_id`` is sorting by creation order

How to change safely:
    - New backends must implement StoreHandle and CollectionHandle
    - Register new schemes in connect_store()
    - Keep the filter dialect in sync with matcher.py
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from ..errors import StoreConnectionError
from .matcher import matches, project, sort_documents

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Filter = Mapping[str, Any]
Projection = Optional[Mapping[str, int]]
SortSpec = Sequence[Tuple[str, int]]

ASCENDING = 1
DESCENDING = -1


class StoreError(Exception):
    """Base exception for backend operation failures."""
    pass


class StoreClosedError(StoreError):
    """Operation attempted on a closed store handle."""
    pass


class DuplicateIdError(StoreError):
    """Insert used an ``_id`` that already exists in the collection."""
    pass


class Cursor:
    """Lazy result of ``CollectionHandle.find()``.

    ``sort``, ``skip`` and ``limit`` configure the cursor and return it, so
    calls chain. Nothing is read until ``to_list()`` is awaited.

    Example:
        >>> docs = await handle.find({"done": {"$eq": False}}, {"_id": 1}) \\
        ...     .sort([("title", ASCENDING)]).skip(10).limit(10).to_list()
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[List[Document]]],
        filter: Filter,
        projection: Projection = None,
    ) -> None:
        """Initialize cursor.

        Args:
            fetch: Coroutine function returning every document of the
                collection in natural (insertion) order
            filter: Filter document
            projection: Fields to keep (``_id`` is always kept)
        """
        self._fetch = fetch
        self._filter = filter
        self._projection = projection
        self._sort: List[Tuple[str, int]] = []
        self._skip = 0
        self._limit = 0

    def sort(self, spec: SortSpec) -> Cursor:
        self._sort = list(spec)
        return self

    def skip(self, count: int) -> Cursor:
        self._skip = max(0, count)
        return self

    def limit(self, count: int) -> Cursor:
        """Limit results; 0 means unlimited."""
        self._limit = max(0, count)
        return self

    async def to_list(self) -> List[Document]:
        documents = [doc for doc in await self._fetch() if matches(doc, self._filter)]
        if self._sort:
            documents = sort_documents(documents, self._sort)
        documents = documents[self._skip:]
        if self._limit:
            documents = documents[: self._limit]
        return [project(doc, self._projection) for doc in documents]


@runtime_checkable
class CollectionHandle(Protocol):
    """One named collection inside a store."""

    name: str

    @abstractmethod
    def find(self, filter: Filter, projection: Projection = None) -> Cursor:
        """Return a cursor over documents matching ``filter``."""
        ...

    @abstractmethod
    async def count(self, filter: Filter) -> int:
        """Count documents matching ``filter``."""
        ...

    @abstractmethod
    async def insert_one(self, document: Document) -> Any:
        """Insert a document and return its native id.

        A document that already carries ``_id`` is stored under that id.

        Raises:
            DuplicateIdError: If ``_id`` is already taken
            StoreClosedError: If the handle is closed
        """
        ...

    @abstractmethod
    async def update_one(
        self,
        filter: Filter,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Optional[Sequence[str]] = None,
    ) -> int:
        """Patch the first matching document.

        Returns:
            Number of documents matched (0 or 1)
        """
        ...

    @abstractmethod
    async def remove(self, filter: Filter) -> int:
        """Remove every matching document and return how many were removed."""
        ...


@runtime_checkable
class StoreHandle(Protocol):
    """An open connection to a document store."""

    descriptor: str

    @abstractmethod
    def get_collection(self, name: str) -> CollectionHandle:
        ...

    @abstractmethod
    def parse_id(self, value: str) -> Any:
        """Convert an opaque string id into the native id type.

        Raises:
            ValueError: If the string is not a valid native id
        """
        ...

    @abstractmethod
    def format_id(self, native_id: Any) -> str:
        """Convert a native id into its opaque string form."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Must be called before any other operation.

        Raises:
            StoreConnectionError: If the backend cannot be opened
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Closing twice is a no-op."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...


async def connect_store(descriptor: str, settings: Optional["Settings"] = None) -> StoreHandle:
    """Factory function to open a store from a connection descriptor.

    Supported descriptors:
        - ``memory://<name>``: shared in-process database
        - ``sqlite:///relative.db``, ``sqlite:////abs/path.db``,
          ``sqlite://:memory:``

    Args:
        descriptor: Connection descriptor
        settings: Settings for backend defaults (defaults to ``get_settings()``)

    Returns:
        Connected StoreHandle

    Raises:
        StoreConnectionError: If the scheme is unsupported or connecting fails
    """
    from ..config import get_settings
    from .memory import MemoryStore
    from .sqlite import SqliteStore

    if not isinstance(descriptor, str) or "://" not in descriptor:
        raise StoreConnectionError(f"Invalid store descriptor: {descriptor!r}", descriptor=None)

    scheme, _, rest = descriptor.partition("://")
    settings = settings or get_settings()

    if scheme == "memory":
        store: StoreHandle = MemoryStore(rest or "default")
    elif scheme == "sqlite":
        store = SqliteStore.from_descriptor(descriptor, settings)
    else:
        raise StoreConnectionError(f"Unsupported store scheme: {scheme}", descriptor=descriptor)

    await store.connect()
    logger.debug("Store connected", extra={"descriptor": descriptor})
    return store

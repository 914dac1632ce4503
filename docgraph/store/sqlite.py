"""
SQLite document store for docgraph.

Documents are stored one row per document, the body JSON-encoded, in a
single ``documents`` table shared by every collection of the database file.
Filters are evaluated by the shared matcher after the collection's rows are
loaded, so the backend supports exactly the same dialect as the in-memory
store.

Invariants:
    - Native ids are unique per collection, like the in-memory store; the
      same id may exist in two collections of one file
    - collection_ids.last_id only grows, so ids are never reused after a
      remove
    - Every write runs inside BEGIN IMMEDIATE ... COMMIT
    - datetime and bytes values survive a round trip through JSON

How to change safely:
    - Schema changes must bump SCHEMA_VERSION and migrate existing files
    - Keep _encode/_decode symmetric

Table schema:
    documents:
        - collection TEXT
        - id INTEGER
        - body_json TEXT
        - PRIMARY KEY (collection, id)
    collection_ids:
        - collection TEXT PRIMARY KEY
        - last_id INTEGER (highest id ever assigned)
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from ..errors import StoreConnectionError
from .base import (
    Cursor,
    Document,
    DuplicateIdError,
    Filter,
    Projection,
    StoreClosedError,
    StoreError,
)
from .matcher import matches

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    if isinstance(value, (bytes, bytearray)):
        return {"$binary": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1:
        if "$date" in obj:
            return datetime.fromisoformat(obj["$date"])
        if "$binary" in obj:
            return base64.b64decode(obj["$binary"])
    return obj


def dumps(body: Mapping[str, Any]) -> str:
    return json.dumps(body, default=_encode)


def loads(text: str) -> Dict[str, Any]:
    return json.loads(text, object_hook=_decode)


class SqliteCollection:
    """Collection handle over a SQLite database."""

    def __init__(self, store: SqliteStore, name: str) -> None:
        self.name = name
        self._store = store

    async def _fetch(self) -> List[Document]:
        conn = self._store._connection()
        try:
            rows = conn.execute(
                "SELECT id, body_json FROM documents WHERE collection = ? ORDER BY id",
                (self.name,),
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read collection {self.name}: {e}") from e
        return [{**loads(row["body_json"]), "_id": row["id"]} for row in rows]

    async def _matching(self, filter: Filter) -> List[Document]:
        return [doc for doc in await self._fetch() if matches(doc, filter)]

    def find(self, filter: Filter, projection: Projection = None) -> Cursor:
        self._store._connection()
        return Cursor(self._fetch, filter, projection)

    async def count(self, filter: Filter) -> int:
        return len(await self._matching(filter))

    async def insert_one(self, document: Document) -> int:
        body = dict(document)
        doc_id = body.pop("_id", None)

        if doc_id is not None and (
            not isinstance(doc_id, int) or isinstance(doc_id, bool) or doc_id <= 0
        ):
            raise DuplicateIdError(f"Invalid _id for {self.name}: {doc_id!r}")

        async with self._store._lock:
            conn = self._store._connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT last_id FROM collection_ids WHERE collection = ?",
                    (self.name,),
                ).fetchone()
                last_id = row["last_id"] if row else 0
                if doc_id is None:
                    doc_id = last_id + 1
                conn.execute(
                    "INSERT INTO documents (collection, id, body_json) VALUES (?, ?, ?)",
                    (self.name, doc_id, dumps(body)),
                )
                conn.execute(
                    """
                    INSERT INTO collection_ids (collection, last_id) VALUES (?, ?)
                    ON CONFLICT(collection) DO UPDATE SET last_id = MAX(last_id, excluded.last_id)
                    """,
                    (self.name, doc_id),
                )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise DuplicateIdError(f"Duplicate _id {doc_id} in {self.name}") from e
            except (sqlite3.Error, TypeError) as e:
                conn.execute("ROLLBACK")
                raise StoreError(f"Insert into {self.name} failed: {e}") from e

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
        async with self._store._lock:
            matched = await self._matching(filter)
            if not matched:
                return 0

            body = dict(matched[0])
            doc_id = body.pop("_id")
            body.update(set_fields or {})
            for key in unset_fields or ():
                body.pop(key, None)

            conn = self._store._connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "UPDATE documents SET body_json = ? WHERE id = ? AND collection = ?",
                    (dumps(body), doc_id, self.name),
                )
                conn.execute("COMMIT")
            except (sqlite3.Error, TypeError) as e:
                conn.execute("ROLLBACK")
                raise StoreError(f"Update in {self.name} failed: {e}") from e
        return 1

    async def remove(self, filter: Filter) -> int:
        async with self._store._lock:
            doc_ids = [doc["_id"] for doc in await self._matching(filter)]
            if not doc_ids:
                return 0

            conn = self._store._connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.executemany(
                    "DELETE FROM documents WHERE id = ? AND collection = ?",
                    [(doc_id, self.name) for doc_id in doc_ids],
                )
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StoreError(f"Remove from {self.name} failed: {e}") from e
        return len(doc_ids)


class SqliteStore:
    """SQLite implementation of StoreHandle.

    The connection is opened by ``connect()`` and held until ``close()``, so
    ``sqlite://:memory:`` databases live as long as the handle.

    Example:
        >>> store = SqliteStore("/var/lib/docgraph/todos.db")
        >>> await store.connect()
        >>> todos = store.get_collection("Todos")
    """

    SCHEMA_VERSION = 2

    def __init__(
        self,
        path: str,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            path: Database file path or ``:memory:``
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode (ignored for ``:memory:``)
        """
        self.path = path
        self.descriptor = f"sqlite:///{path}" if path != MEMORY_PATH else "sqlite://:memory:"
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_descriptor(cls, descriptor: str, settings: "Settings") -> SqliteStore:
        """Build a store from ``sqlite://`` descriptor and settings.

        Relative paths resolve against ``settings.sqlite_data_dir``.
        """
        rest = descriptor.partition("://")[2]
        if rest in (MEMORY_PATH, "/" + MEMORY_PATH):
            path = MEMORY_PATH
        else:
            if not rest.startswith("/") or rest == "/":
                raise StoreConnectionError(
                    f"Invalid sqlite descriptor: {descriptor}", descriptor=descriptor
                )
            relative = rest[1:]
            candidate = Path(relative)
            if not candidate.is_absolute():
                candidate = Path(settings.sqlite_data_dir) / candidate
            path = str(candidate)

        return cls(
            path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            wal_mode=settings.sqlite_wal_mode,
        )

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        """Open the database file and create the schema if needed.

        Raises:
            StoreConnectionError: If the file cannot be opened
        """
        if self._conn is not None:
            return
        try:
            if self.path != MEMORY_PATH:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode and self.path != MEMORY_PATH:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            self._create_schema(conn)
        except (sqlite3.Error, OSError) as e:
            raise StoreConnectionError(
                f"Failed to open SQLite database {self.path}: {e}",
                descriptor=self.descriptor,
            ) from e

        self._conn = conn
        logger.info(f"Opened SQLite document store: {self.path}")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            )
        """)
        version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
        if version == 1:
            self._migrate_v1(conn)

        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id INTEGER NOT NULL,
                body_json TEXT NOT NULL DEFAULT '{}',
                PRIMARY KEY (collection, id)
            );

            CREATE TABLE IF NOT EXISTS collection_ids (
                collection TEXT PRIMARY KEY,
                last_id INTEGER NOT NULL
            );
        """)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, int(time.time() * 1000)),
        )

    def _migrate_v1(self, conn: sqlite3.Connection) -> None:
        """Move a version 1 file (one id space for the whole table) to per-collection ids."""
        conn.executescript("""
            BEGIN IMMEDIATE;
            ALTER TABLE documents RENAME TO documents_v1;
            DROP INDEX IF EXISTS idx_documents_collection;
            CREATE TABLE documents (
                collection TEXT NOT NULL,
                id INTEGER NOT NULL,
                body_json TEXT NOT NULL DEFAULT '{}',
                PRIMARY KEY (collection, id)
            );
            CREATE TABLE IF NOT EXISTS collection_ids (
                collection TEXT PRIMARY KEY,
                last_id INTEGER NOT NULL
            );
            INSERT INTO documents (collection, id, body_json)
                SELECT collection, id, body_json FROM documents_v1;
            INSERT INTO collection_ids (collection, last_id)
                SELECT collection, MAX(id) FROM documents_v1 GROUP BY collection;
            DROP TABLE documents_v1;
            COMMIT;
        """)
        logger.info("Migrated SQLite document store to schema version 2", extra={"path": self.path})

    async def close(self) -> None:
        if self._conn is None:
            logger.debug("SqliteStore already closed", extra={"path": self.path})
            return
        self._conn.close()
        self._conn = None
        logger.debug("SqliteStore closed", extra={"path": self.path})

    def get_collection(self, name: str) -> SqliteCollection:
        return SqliteCollection(self, name)

    def parse_id(self, value: str) -> int:
        if not isinstance(value, str) or not value.isdigit():
            raise ValueError(f"Not a SQLite document id: {value!r}")
        return int(value)

    def format_id(self, native_id: Any) -> str:
        return str(native_id)

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreClosedError(f"Store {self.descriptor} is closed")
        return self._conn

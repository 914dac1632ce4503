"""
CRUD orchestration for one Entity.

A Collection wraps a resolved Entity and exposes create, read, update,
delete, search, load and close. Nested items are written through the
cascade engine and read back through the Collections of related Entities,
so one call can touch the whole reachable part of the graph.

Invariants:
    - Identifiers are strings at this API; native ids never leak out
    - Single-item calls raise the specific error; batch calls attempt every
      element and raise one AggregateError (with partial results) afterwards
    - Stored documents only contain schema-declared fields and reference ids
    - A query whose scenarios all collapsed matches nothing, without a
      store round trip

Concurrency:
    Every store call is an await point; batches run sequentially. There is
    no multi-document transaction and no optimistic concurrency control, so
    an update/delete racing another writer can act on a stale reference set.

Example:
    >>> todos = await open_collection(todo_config)
    >>> created = await todos.create({"title": "Wash Clothes"})
    >>> item = await todos.read(created["id"])
    >>> page = await todos.search(
    ...     [[{"field": "title", "operator": "CONTAINS", "value": "wash"}]],
    ...     SearchOptions(items_per_page=10),
    ... )
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
)

from .cascade import CascadeEngine, ItemPath
from .errors import (
    AggregateError,
    DocGraphError,
    DocumentNotFoundError,
    InvalidIdentifierError,
    Operation,
    StoreOperationError,
)
from .query.compiler import ID_FIELD, NATIVE_ID_FIELD, QueryCompiler
from .schema.resolver import resolve_schema
from .schema.types import Entity, EntityRef, EntityRefList
from .store.base import ASCENDING, DESCENDING, StoreError
from .validate import clean_item, clean_items

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SearchOptions:
    """Options for Collection.search().

    Attributes:
        count_only: Only count matches, return no data
        ids_only: Return ``{"id": ...}`` per match instead of hydrated items
        page_number: 1-based page to return
        items_per_page: Page size; 0 or None means unlimited
        order_by: Fields in priority order (a single name is accepted);
            undeclared fields are ignored
        descending: Reverse the sort (reverse-by-id when no order_by)
    """

    count_only: bool = False
    ids_only: bool = False
    page_number: Optional[int] = None
    items_per_page: Optional[int] = None
    order_by: Sequence[str] = ()
    descending: bool = False


@dataclass
class SearchResult:
    """Matches of a search.

    Attributes:
        total_items: Number of items matching the query
        total_pages: Page count when a page size was given, else None
        data: Matched items (hydrated, or ``{"id": ...}`` when ids_only)
    """

    total_items: int
    total_pages: Optional[int] = None
    data: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Collection:
    """CRUD orchestrator for one Entity.

    Collections for related Entities are created on demand and shared
    through a registry, so each Entity of a graph has one Collection.

    Args:
        entity: Resolved Entity
    """

    def __init__(self, entity: Entity, _registry: Optional[Dict[int, Collection]] = None) -> None:
        self.entity = entity
        self._registry = _registry if _registry is not None else {}
        self._registry[id(entity)] = self
        self._compiler = QueryCompiler(self._search_ids)
        self._cascade = CascadeEngine(self)

    @property
    def name(self) -> str:
        return self.entity.name

    def nested(self, entity: Entity) -> Collection:
        """Collection for a related Entity of the same graph."""
        collection = self._registry.get(id(entity))
        if collection is None:
            collection = Collection(entity, self._registry)
        return collection

    def __repr__(self) -> str:
        return f"Collection({self.entity.name!r})"

    # Create / load

    async def create(self, items: Any) -> Any:
        """Create item(s), saving nested items first.

        Nested items without an ``id`` are created, nested items with one are
        updated. An ``id`` on a top-level item is ignored.

        Args:
            items: An item or a list of items

        Returns:
            ``{"id": ...}`` or a list of them

        Raises:
            InvalidItemError: If items is neither a mapping nor a list
            FieldTypeError: If a field value has the wrong type
            AggregateError: Nested failures (by field) or batch failures (by index)
        """
        if isinstance(items, (list, tuple)):
            return await self._save_batch(items, load=False)
        return await self._insert(clean_item(items, self.entity.fields), load=False)

    async def load(self, items: Any) -> Any:
        """Insert item(s) under the ids they carry, nested items included.

        Used to restore exported data. Items without an ``id`` get a new one.
        """
        if isinstance(items, (list, tuple)):
            return await self._save_batch(items, load=True)
        return await self._insert(clean_item(items, self.entity.fields), load=True)

    async def _save_batch(self, items: Sequence[Any], load: bool) -> List[Dict[str, str]]:
        try:
            cleaned: Dict[int, Dict[str, Any]] = dict(
                enumerate(clean_items(items, self.entity.fields))
            )
            errors: Dict[int, Exception] = {}
        except AggregateError as e:
            cleaned = dict(e.results)
            errors = dict(e.errors)

        results: Dict[int, Dict[str, str]] = {}
        for index in range(len(items)):
            if index in errors:
                continue
            try:
                results[index] = await self._insert(cleaned[index], load)
            except DocGraphError as e:
                errors[index] = e

        if errors:
            raise AggregateError(dict(sorted(errors.items())), results)
        return [results[index] for index in range(len(items))]

    async def _insert(self, data: Dict[str, Any], load: bool) -> Dict[str, str]:
        item_id = data.pop(ID_FIELD, None)
        native_id = self._parse_id(item_id) if load and item_id is not None else None

        document = await self._cascade.save(data, load=load)
        document = {k: v for k, v in document.items() if v is not None}
        if native_id is not None:
            document[NATIVE_ID_FIELD] = native_id

        native_id = await self._store_call(
            Operation.CREATE, lambda: self.entity.collection.insert_one(document)
        )
        new_id = self.entity.store.format_id(native_id)
        logger.debug("Item created", extra={"entity": self.name, "id": new_id})
        return {"id": new_id}

    # Read

    async def read(self, ids: Any) -> Any:
        """Read item(s) by id with every relation hydrated.

        A single relation whose item cannot be read becomes None; list
        relation elements that cannot be read are left out.

        Args:
            ids: An id string or a list of them

        Raises:
            InvalidIdentifierError: If an id is not a valid string id
            DocumentNotFoundError: If the item does not exist
            AggregateError: Batch failures keyed by index
        """
        if isinstance(ids, (list, tuple)):
            return await self._batch(ids, self._read_one)
        return await self._read_one(ids)

    async def _read_one(self, item_id: Any, path: ItemPath = frozenset()) -> Dict[str, Any]:
        native_id = self._parse_id(item_id)
        document = await self._fetch_document(native_id, item_id, Operation.READ)

        item: Dict[str, Any] = {"id": self.entity.store.format_id(document[NATIVE_ID_FIELD])}
        path = path | {(id(self.entity), item["id"])}

        for name, field_type in self.entity.fields.items():
            if name not in document:
                continue
            value = document[name]

            if isinstance(field_type, EntityRef):
                item[name] = await self._read_reference(field_type.entity, value, path)
            elif isinstance(field_type, EntityRefList):
                hydrated = []
                for ref in value if isinstance(value, list) else ():
                    nested_item = await self._read_reference(field_type.entity, ref, path)
                    if nested_item is not None:
                        hydrated.append(nested_item)
                item[name] = hydrated
            else:
                item[name] = value

        return item

    async def _read_reference(self, entity: Entity, ref: Any, path: ItemPath) -> Optional[Dict[str, Any]]:
        if (id(entity), ref) in path:
            return {"id": ref}
        try:
            return await self.nested(entity)._read_one(ref, path)
        except DocGraphError as e:
            logger.debug(
                "Dangling reference",
                extra={"entity": entity.name, "id": ref, "error": e.code},
            )
            return None

    # Update

    async def update(self, items: Any) -> Any:
        """Update item(s) by id.

        Fields present with a value are set, fields present as None are
        cleared, absent fields are left alone. For owned relations, nested
        items missing from the new value are deleted; nested items are then
        created or updated.

        Raises:
            InvalidIdentifierError: If an item lacks a valid id
            DocumentNotFoundError: If the item does not exist
            AggregateError: Cascade failures (by field) or batch failures (by index)
        """
        if isinstance(items, (list, tuple)):
            return await self._batch(items, self._update_one)
        return await self._update_one(items)

    async def _update_one(self, item: Any) -> Dict[str, str]:
        data = clean_item(item, self.entity.fields)
        item_id = data.pop(ID_FIELD, None)
        native_id = self._parse_id(item_id)

        # Nested writes only happen once the owner is known to exist
        if any(name in data for name, _ in self.entity.relations()):
            stored = await self._fetch_document(native_id, item_id, Operation.UPDATE)
            path = frozenset({(id(self.entity), self.entity.store.format_id(native_id))})
            document = await self._cascade.update(stored, data, path)
        else:
            document = await self._cascade.save(data)

        set_fields = {k: v for k, v in document.items() if v is not None}
        unset_fields = [k for k, v in document.items() if v is None]

        matched = await self._store_call(
            Operation.UPDATE,
            lambda: self.entity.collection.update_one(
                {NATIVE_ID_FIELD: native_id}, set_fields, unset_fields
            ),
        )
        if not matched:
            raise DocumentNotFoundError(Operation.UPDATE, self.name, item_id)

        logger.debug(
            "Item updated",
            extra={"entity": self.name, "id": item_id, "set": list(set_fields), "unset": unset_fields},
        )
        return {"id": item_id}

    # Delete

    async def delete(self, ids: Any) -> Any:
        """Delete item(s) by id, deleting owned nested items first.

        Raises:
            InvalidIdentifierError: If an id is not a valid string id
            DocumentNotFoundError: If the item does not exist
            AggregateError: Cascade failures (by field) or batch failures (by index)
        """
        if isinstance(ids, (list, tuple)):
            return await self._batch(ids, self._delete_one)
        return await self._delete_one(ids)

    async def _delete_one(self, item_id: Any, path: ItemPath = frozenset()) -> Dict[str, str]:
        native_id = self._parse_id(item_id)

        if any(self.entity.owns(name) for name, _ in self.entity.relations()):
            stored = await self._fetch_document(native_id, item_id, Operation.DELETE)
            path = path | {(id(self.entity), self.entity.store.format_id(native_id))}
            await self._cascade.delete(stored, path)

        removed = await self._store_call(
            Operation.DELETE,
            lambda: self.entity.collection.remove({NATIVE_ID_FIELD: native_id}),
        )
        if not removed:
            raise DocumentNotFoundError(Operation.DELETE, self.name, item_id)

        logger.debug("Item deleted", extra={"entity": self.name, "id": item_id})
        return {"id": item_id}

    # Search

    async def search(self, query: Any, options: Optional[SearchOptions] = None) -> SearchResult:
        """Search items with an OR-of-AND query.

        Args:
            query: List of scenarios, each a list of conditions
            options: Paging, ordering and result shape

        Returns:
            SearchResult with the total count and the requested page

        Raises:
            InvalidQueryStructureError: If query is not a list
            AggregateError: Query errors keyed by scenario, then condition index
            StoreOperationError: If the store fails
        """
        options = options or SearchOptions()
        compiled = await self._compiler.compile(query, self.entity)
        page_size = abs(options.items_per_page or 0)

        if compiled.matches_nothing:
            total = 0
        else:
            total = await self._store_call(
                Operation.SEARCH, lambda: self.entity.collection.count(compiled.filter)
            )

        result = SearchResult(
            total_items=total,
            total_pages=math.ceil(total / page_size) if page_size else None,
        )
        if options.count_only or compiled.matches_nothing:
            return result

        page_number = abs(options.page_number or 1)
        skip = (page_number - 1) * page_size

        documents = await self._store_call(
            Operation.SEARCH,
            lambda: self.entity.collection.find(compiled.filter, {NATIVE_ID_FIELD: 1})
            .sort(self._sort_spec(options))
            .skip(skip)
            .limit(page_size)
            .to_list(),
        )
        ids = [self.entity.store.format_id(doc[NATIVE_ID_FIELD]) for doc in documents]

        if options.ids_only:
            result.data = [{"id": item_id} for item_id in ids]
        else:
            result.data = await self.read(ids)

        logger.debug(
            "Search completed",
            extra={"entity": self.name, "total": total, "returned": len(ids)},
        )
        return result

    def _sort_spec(self, options: SearchOptions) -> List[Tuple[str, int]]:
        direction = DESCENDING if options.descending else ASCENDING
        order_by = options.order_by or ()
        if isinstance(order_by, str):
            order_by = [order_by]
        spec = []
        for name in order_by:
            if not isinstance(name, str):
                continue
            if name == ID_FIELD:
                spec.append((NATIVE_ID_FIELD, direction))
            elif name in self.entity.fields:
                spec.append((name, direction))
        if not spec and options.descending:
            spec.append((NATIVE_ID_FIELD, DESCENDING))
        return spec

    async def _search_ids(self, entity: Entity, query: Any) -> List[str]:
        result = await self.nested(entity).search(query, SearchOptions(ids_only=True))
        return [item["id"] for item in result.data]

    # Close

    async def close(self, cascade_all: bool = False, _visited: Optional[Set[int]] = None) -> None:
        """Close the store connection of this Entity.

        Args:
            cascade_all: Also close the connections of every related Entity.
                Each Entity is visited once, so cyclic graphs terminate.
                Connections are not reference counted: closing a shared
                connection affects every Entity holding it.
        """
        visited = _visited if _visited is not None else set()
        if id(self.entity) in visited:
            return
        visited.add(id(self.entity))

        await self.entity.store.close()
        logger.debug("Collection closed", extra={"entity": self.name})

        if cascade_all:
            for entity in self.entity.related_entities():
                await self.nested(entity).close(True, visited)

    # Helpers

    async def _batch(self, elements: Sequence[Any], operation: Callable[[Any], Awaitable[T]]) -> List[T]:
        results: Dict[int, T] = {}
        errors: Dict[int, Exception] = {}

        for index, element in enumerate(elements):
            try:
                results[index] = await operation(element)
            except DocGraphError as e:
                errors[index] = e

        if errors:
            raise AggregateError(errors, results)
        return [results[index] for index in range(len(elements))]

    def _parse_id(self, item_id: Any) -> Any:
        if not isinstance(item_id, str):
            raise InvalidIdentifierError(item_id)
        try:
            return self.entity.store.parse_id(item_id)
        except ValueError as e:
            raise InvalidIdentifierError(item_id) from e

    async def _fetch_document(self, native_id: Any, item_id: str, operation: Operation) -> Dict[str, Any]:
        projection = {name: 1 for name in self.entity.fields}
        documents = await self._store_call(
            operation,
            lambda: self.entity.collection.find({NATIVE_ID_FIELD: native_id}, projection).to_list(),
        )
        if not documents:
            raise DocumentNotFoundError(operation, self.name, item_id)
        return documents[0]

    async def _store_call(self, operation: Operation, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except StoreError as e:
            logger.error(
                f"Store {operation.value} failed on {self.name}: {e}",
                extra={"entity": self.name, "operation": operation.value},
            )
            raise StoreOperationError(operation) from e


async def open_collection(
    config: Mapping[str, Any],
    settings: Optional["Settings"] = None,
) -> Collection:
    """Resolve a schema config tree and return the root Collection."""
    return Collection(await resolve_schema(config, settings=settings))

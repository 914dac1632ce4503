"""
Schema resolution: config tree -> Entity graph.

A config node is a mapping::

    {
        "name": "Todos",                   # collection name
        "connection": "memory://example",  # descriptor or open StoreHandle
        "fields": {
            "title": "string",             # kind name, PrimitiveKind or Python type
            "createdOn": datetime,
            "owner": user_node,            # nested node -> EntityRef
            "childTodos": [todo_node],     # [nested node] -> EntityRefList
        },
        "cascade": {"childTodos": True},   # owned relations
    }

Nodes may reference themselves, directly or through other nodes. Resolution
memoizes by node identity, so each distinct node becomes exactly one Entity
and cycles in the config become cycles of references between Entities.

Invariants:
    - An Entity is registered in the memo before its fields are resolved
    - Two structurally equal but distinct nodes resolve to two Entities
    - Resolution terminates for every finite config graph
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from ..errors import ConfigurationError, DocGraphError
from ..store.base import StoreHandle, connect_store
from .types import (
    Entity,
    EntityRef,
    EntityRefList,
    FieldType,
    Primitive,
    PrimitiveKind,
)

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


class ResolutionMemo:
    """Identity-keyed map from config node to the Entity built for it.

    Config nodes are usually dicts, which are unhashable, so entries are keyed
    by ``id(node)``. The node itself is kept alongside so its id cannot be
    recycled while the memo is alive.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, Tuple[Any, Entity]] = {}
        self.opened: List[StoreHandle] = []

    def get(self, node: Any) -> Optional[Entity]:
        entry = self._entries.get(id(node))
        return entry[1] if entry is not None else None

    def register(self, node: Any, entity: Entity) -> None:
        self._entries[id(node)] = (node, entity)

    def entities(self) -> List[Entity]:
        return [entity for _, entity in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)

    async def close_opened(self) -> None:
        """Close the stores connected from descriptors during resolution."""
        while self.opened:
            await self.opened.pop().close()


async def resolve_schema(
    config: Mapping[str, Any],
    memo: Optional[ResolutionMemo] = None,
    settings: Optional["Settings"] = None,
) -> Entity:
    """Resolve a config tree into its root Entity.

    Args:
        config: Root config node
        memo: Memo shared across calls (typically not passed)
        settings: Settings forwarded to store backends

    Returns:
        Root Entity, connected and ready for use

    Raises:
        ConfigurationError: If a node is incomplete or a declaration is invalid
        StoreConnectionError: If a store cannot be opened

    On failure, stores already connected from descriptors are closed again;
    store handles passed in the config are left open.
    """
    if memo is None:
        memo = ResolutionMemo()
    try:
        entity = await _resolve_node(config, memo, settings)
    except DocGraphError:
        logger.warning(
            "Schema resolution failed, closing opened stores",
            extra={"opened": len(memo.opened)},
        )
        await memo.close_opened()
        raise
    logger.info(
        "Schema resolved",
        extra={"root": entity.name, "entities": len(memo)},
    )
    return entity


async def _resolve_node(
    node: Any,
    memo: ResolutionMemo,
    settings: Optional["Settings"],
) -> Entity:
    existing = memo.get(node)
    if existing is not None:
        return existing

    if not isinstance(node, Mapping):
        raise ConfigurationError(f"Config node must be a mapping, got {type(node).__name__}")

    name = node.get("name")
    fields = node.get("fields")
    connection = node.get("connection")

    if not name or not isinstance(name, str):
        raise ConfigurationError("name is required")
    if not isinstance(fields, Mapping):
        raise ConfigurationError("fields is required", node_name=name)
    if not connection:
        raise ConfigurationError("connection is required", node_name=name)

    store = await _open_store(connection, settings, name)
    if isinstance(connection, str):
        memo.opened.append(store)
    entity = Entity(name=name, store=store)
    memo.register(node, entity)

    for field_name, declaration in fields.items():
        entity.fields[field_name] = await _resolve_field(
            name, field_name, declaration, memo, settings
        )

    entity.cascade = _resolve_cascade(entity, node.get("cascade"))

    logger.debug(
        "Entity resolved",
        extra={
            "entity": name,
            "fields": list(entity.fields),
            "cascade": [k for k, v in entity.cascade.items() if v],
        },
    )
    return entity


async def _open_store(connection: Any, settings: Optional["Settings"], name: str) -> StoreHandle:
    if isinstance(connection, str):
        return await connect_store(connection, settings)
    if isinstance(connection, StoreHandle):
        return connection
    raise ConfigurationError(
        f"connection must be a descriptor string or store handle, got {type(connection).__name__}",
        node_name=name,
    )


async def _resolve_field(
    node_name: str,
    field_name: str,
    declaration: Any,
    memo: ResolutionMemo,
    settings: Optional["Settings"],
) -> FieldType:
    if isinstance(declaration, Entity):
        return EntityRef(declaration)

    if isinstance(declaration, Mapping):
        return EntityRef(await _resolve_node(declaration, memo, settings))

    if isinstance(declaration, (list, tuple)):
        if len(declaration) != 1:
            raise ConfigurationError(
                f"List field '{field_name}' must hold exactly one nested node",
                node_name=node_name,
            )
        (element,) = declaration
        if isinstance(element, Entity):
            return EntityRefList(element)
        if isinstance(element, Mapping):
            return EntityRefList(await _resolve_node(element, memo, settings))
        raise ConfigurationError(
            f"List field '{field_name}' must hold a nested node, got {type(element).__name__}",
            node_name=node_name,
        )

    try:
        if isinstance(declaration, PrimitiveKind):
            return Primitive(declaration)
        if isinstance(declaration, str):
            return Primitive(PrimitiveKind.from_str(declaration))
        return Primitive(PrimitiveKind.from_python_type(declaration))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            f"Field '{field_name}': {e}",
            node_name=node_name,
        ) from e


def _resolve_cascade(entity: Entity, policy: Any) -> Dict[str, bool]:
    if policy is None:
        return {}
    if not isinstance(policy, Mapping):
        raise ConfigurationError("cascade must be a mapping of field to bool", node_name=entity.name)

    relations = dict(entity.relations())
    cascade: Dict[str, bool] = {}
    for field_name, owned in policy.items():
        if field_name not in entity.fields:
            raise ConfigurationError(
                f"cascade names undeclared field '{field_name}'",
                node_name=entity.name,
            )
        if owned and field_name not in relations:
            raise ConfigurationError(
                f"cascade field '{field_name}' is not a relation",
                node_name=entity.name,
            )
        cascade[field_name] = bool(owned)
    return cascade

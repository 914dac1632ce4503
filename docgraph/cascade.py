"""
Cascade engine for nested writes and deletes.

Relation fields are stored as references: a single id string for EntityRef
fields, a list of id strings for EntityRefList fields. The engine turns
nested items into those references on the way in, and follows references
to owned items on update and delete.

Each owner write is a saga of independent steps:
    1. prune: delete previously referenced owned items the new value dropped
    2. save: create (no id) or update (id present) every nested item
    3. owner write: performed by the caller only if steps 1-2 fully succeeded

Every branch of a step is attempted even when a sibling failed. Failures
are collected keyed by field name, list fields nesting an AggregateError
keyed by index. Completed steps are never rolled back.

Invariants:
    - Stored owner documents hold ids only, never embedded nested documents
    - Non-owned relation fields are never traversed for deletion
    - A nested item that is already gone counts as deleted
    - An item is deleted at most once per cascade, so owned cycles terminate
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Hashable, List, Mapping, Optional, Tuple

from .errors import AggregateError, DocGraphError, DocumentNotFoundError
from .schema.types import EntityRef, EntityRefList, Relation

if TYPE_CHECKING:
    from .collection import Collection

logger = logging.getLogger(__name__)

# (entity identity, item id) pairs already being written or deleted up the call chain
ItemPath = FrozenSet[Tuple[int, str]]


def referenced_ids(relation: Relation, stored_value: Any) -> List[str]:
    """Ids referenced by a stored relation value."""
    if isinstance(relation, EntityRefList):
        if not isinstance(stored_value, list):
            return []
        return [ref for ref in stored_value if isinstance(ref, str)]
    return [stored_value] if isinstance(stored_value, str) else []


def incoming_ids(relation: Relation, value: Any) -> List[str]:
    """Ids carried by the nested item(s) of an incoming relation value."""
    nested = value if isinstance(relation, EntityRefList) else [value]
    return [
        item["id"]
        for item in nested or ()
        if isinstance(item, Mapping) and isinstance(item.get("id"), str)
    ]


def _record(errors: Dict[Hashable, Exception], key: Hashable, step: str, error: Exception) -> None:
    if key in errors:
        errors[key] = AggregateError({"prune": errors[key], step: error})
    else:
        errors[key] = error


class CascadeEngine:
    """Applies the cascade policy of one Collection's Entity.

    Args:
        owner: The Collection whose items are being written or deleted
    """

    def __init__(self, owner: Collection) -> None:
        self.owner = owner

    @property
    def entity(self):
        return self.owner.entity

    async def save(self, data: Dict[str, Any], load: bool = False) -> Dict[str, Any]:
        """Save every nested item of a cleaned item, returning the owner document.

        Args:
            data: Cleaned item (without the owner id)
            load: Insert nested items under the ids they carry

        Returns:
            Copy of ``data`` with relation values replaced by ids

        Raises:
            AggregateError: Nested save failures keyed by field
        """
        document = dict(data)
        errors: Dict[Hashable, Exception] = {}

        for name, relation in self.entity.relations():
            if name not in data:
                continue
            ids, error = await self._save_field(relation, data[name], load)
            document[name] = ids
            if error is not None:
                errors[name] = error

        if errors:
            raise AggregateError(errors)
        return document

    async def update(
        self,
        stored: Mapping[str, Any],
        data: Dict[str, Any],
        path: ItemPath = frozenset(),
    ) -> Dict[str, Any]:
        """Prune dropped owned items, then save nested items.

        Args:
            stored: Currently stored owner document (references as ids)
            data: Cleaned incoming item (without the owner id)
            path: Items whose deletion is already in progress, the owner
                included; they are never deleted again

        Returns:
            Copy of ``data`` with relation values replaced by ids

        Raises:
            AggregateError: Prune and save failures keyed by field
        """
        document = dict(data)
        errors: Dict[Hashable, Exception] = {}

        for name, relation in self.entity.relations():
            if name not in data or not self.entity.owns(name):
                continue
            keep = set(incoming_ids(relation, data[name]))
            dropped = [
                (index, ref)
                for index, ref in enumerate(referenced_ids(relation, stored.get(name)))
                if ref not in keep
            ]
            error = await self._delete_refs(relation, dropped, path)
            if error is not None:
                errors[name] = error

        for name, relation in self.entity.relations():
            if name not in data:
                continue
            ids, error = await self._save_field(relation, data[name], load=False)
            document[name] = ids
            if error is not None:
                _record(errors, name, "save", error)

        if errors:
            raise AggregateError(errors)
        return document

    async def delete(self, stored: Mapping[str, Any], path: ItemPath = frozenset()) -> None:
        """Delete every item referenced by an owned relation of ``stored``.

        Raises:
            AggregateError: Nested delete failures keyed by field
        """
        errors: Dict[Hashable, Exception] = {}

        for name, relation in self.entity.relations():
            if not self.entity.owns(name):
                continue
            refs = list(enumerate(referenced_ids(relation, stored.get(name))))
            error = await self._delete_refs(relation, refs, path)
            if error is not None:
                errors[name] = error

        if errors:
            raise AggregateError(errors)

    async def _save_field(
        self,
        relation: Relation,
        value: Any,
        load: bool,
    ) -> Tuple[Any, Optional[Exception]]:
        if value is None:
            return None, None

        nested = self.owner.nested(relation.entity)

        if isinstance(relation, EntityRef):
            try:
                return await self._save_one(nested, value, load), None
            except DocGraphError as e:
                return None, e

        ids: List[str] = []
        errors: Dict[Hashable, Exception] = {}
        results: Dict[Hashable, Any] = {}
        for index, item in enumerate(value):
            try:
                ref = await self._save_one(nested, item, load)
            except DocGraphError as e:
                errors[index] = e
                continue
            ids.append(ref)
            results[index] = {"id": ref}

        if errors:
            return ids, AggregateError(errors, results)
        return ids, None

    @staticmethod
    async def _save_one(nested: Collection, item: Any, load: bool) -> str:
        if load:
            result = await nested.load(item)
        elif isinstance(item, Mapping) and item.get("id") is not None:
            result = await nested.update(item)
        else:
            result = await nested.create(item)
        return result["id"]

    async def _delete_refs(
        self,
        relation: Relation,
        refs: List[Tuple[int, str]],
        path: ItemPath,
    ) -> Optional[Exception]:
        """Delete referenced items; ``refs`` pairs each id with its stored index."""
        if not refs:
            return None

        nested = self.owner.nested(relation.entity)
        errors: Dict[Hashable, Exception] = {}

        for index, ref in refs:
            if (id(relation.entity), ref) in path:
                continue
            try:
                await nested._delete_one(ref, path)
            except DocumentNotFoundError:
                logger.debug(
                    "Owned item already gone",
                    extra={"entity": relation.entity.name, "id": ref},
                )
            except DocGraphError as e:
                errors[index] = e

        if not errors:
            logger.debug(
                "Owned items deleted",
                extra={"owner": self.entity.name, "entity": relation.entity.name, "count": len(refs)},
            )
            return None
        if isinstance(relation, EntityRef):
            return next(iter(errors.values()))
        return AggregateError(errors)

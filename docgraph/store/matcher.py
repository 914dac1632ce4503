"""
Evaluation of Mongo-style filter documents against stored documents.

Supported operators:
    $or, $and (top level), $eq, $ne, $gt, $gte, $lt, $lte, $in,
    $regex (+ $options), $not, $exists

Semantics follow the document-store conventions the query compiler relies on:
    - A list-valued field matches when any element matches ($eq, $in,
      comparisons, $regex)
    - Comparisons only succeed between values of the same type bracket
      (numbers, strings, dates, bytes); booleans are never numbers
    - $exists tests key presence, not truthiness
    - An empty $or matches nothing
"""

from __future__ import annotations

import copy
import re
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": lambda a, b: a > b,
    "$gte": lambda a, b: a >= b,
    "$lt": lambda a, b: a < b,
    "$lte": lambda a, b: a <= b,
}


def matches(document: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    """Return True when ``document`` satisfies ``filter``.

    Raises:
        ValueError: If the filter uses an unsupported operator
    """
    for key, condition in filter.items():
        if key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
        elif key.startswith("$"):
            raise ValueError(f"Unsupported top-level operator: {key}")
        elif not _match_field(key in document, document.get(key), condition):
            return False
    return True


def _is_operator_document(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(isinstance(k, str) and k.startswith("$") for k in condition)
    )


def _match_field(present: bool, value: Any, condition: Any) -> bool:
    if _is_operator_document(condition):
        return _match_operators(present, value, condition)
    return present and _equals(value, condition)


def _match_operators(present: bool, value: Any, operators: Mapping[str, Any]) -> bool:
    for op, arg in operators.items():
        if op == "$options":
            continue
        if op == "$eq":
            ok = present and _equals(value, arg)
        elif op == "$ne":
            ok = not (present and _equals(value, arg))
        elif op == "$in":
            ok = present and any(_equals(value, candidate) for candidate in arg)
        elif op in _COMPARATORS:
            compare = _COMPARATORS[op]
            ok = present and _any_element(value, lambda v: _compare(v, arg, compare))
        elif op == "$regex":
            pattern = _compile(arg, operators.get("$options", ""))
            ok = present and _any_element(
                value, lambda v: isinstance(v, str) and pattern.search(v) is not None
            )
        elif op == "$exists":
            ok = present == bool(arg)
        elif op == "$not":
            ok = not _match_operators(present, value, arg)
        else:
            raise ValueError(f"Unsupported operator: {op}")

        if not ok:
            return False
    return True


def _any_element(value: Any, predicate: Callable[[Any], bool]) -> bool:
    if isinstance(value, list):
        return any(predicate(v) for v in value)
    return predicate(value)


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def _equals(value: Any, target: Any) -> bool:
    if isinstance(value, list) and not isinstance(target, list):
        return any(_same(v, target) for v in value)
    return _same(value, target)


def _bracket(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, bytes):
        return "bytes"
    return None


def _compare(value: Any, arg: Any, compare: Callable[[Any, Any], bool]) -> bool:
    bracket = _bracket(value)
    if bracket is None or bracket != _bracket(arg):
        return False
    try:
        return compare(value, arg)
    except TypeError:
        # naive vs aware datetimes
        return False


@lru_cache(maxsize=256)
def _compile(pattern: str, options: str) -> "re.Pattern[str]":
    flags = 0
    if "i" in options:
        flags |= re.IGNORECASE
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    return re.compile(pattern, flags)


# BSON comparison order
_SORT_RANKS: Tuple[Tuple[type, int], ...] = (
    (bool, 6),
    (int, 1),
    (float, 1),
    (str, 2),
    (dict, 3),
    (list, 4),
    (bytes, 5),
    (datetime, 7),
)


def _sort_key(value: Any) -> Tuple[int, Any]:
    if value is None:
        return 0, 0
    for kind, rank in _SORT_RANKS:
        if isinstance(value, kind):
            if kind in (dict, list):
                return rank, len(value)
            if isinstance(value, datetime):
                return rank, value.timestamp()
            return rank, value
    return 8, repr(value)


def sort_documents(documents: List[Dict[str, Any]], spec: Sequence[Tuple[str, int]]) -> List[Dict[str, Any]]:
    """Sort documents by ``[(field, 1 | -1), ...]`` in priority order.

    Missing fields sort as null. The sort is stable, so documents that tie on
    every key keep their natural order.
    """
    result = list(documents)
    for field_name, direction in reversed(list(spec)):
        result.sort(key=lambda doc: _sort_key(doc.get(field_name)), reverse=direction < 0)
    return result


def project(document: Mapping[str, Any], projection: Optional[Mapping[str, int]]) -> Dict[str, Any]:
    """Copy ``document`` keeping only projected fields (``_id`` always kept)."""
    if not projection:
        return copy.deepcopy(dict(document))
    keep_id = projection.get("_id", 1)
    result = {
        key: copy.deepcopy(value)
        for key, value in document.items()
        if projection.get(key) and key != "_id"
    }
    if keep_id and "_id" in document:
        result["_id"] = document["_id"]
    return result

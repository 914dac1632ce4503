"""
Query operator table.

Each operator name maps to a builder that turns a scalar operand into the
store's filter fragment for one field. Text operators build
case-insensitive patterns from an escaped operand, so user input never
carries pattern syntax into the store.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Mapping

OperatorBuilder = Callable[[Any], Dict[str, Any]]

_PATTERN_METACHARACTERS = re.compile(r"[-/\\^$*+?.()|\[\]{}]")


def escape_pattern(value: str) -> str:
    """Backslash-escape every pattern metacharacter in ``value``."""
    return _PATTERN_METACHARACTERS.sub(lambda m: "\\" + m.group(0), value)


class QueryOperator(str, Enum):
    """Names accepted in a condition's ``operator``."""

    EQUAL_TO = "EQUAL_TO"
    NOT_EQUAL_TO = "NOT_EQUAL_TO"
    GREATER_THAN = "GREATER_THAN"
    GREATER_THAN_OR_EQUAL_TO = "GREATER_THAN_OR_EQUAL_TO"
    LESS_THAN = "LESS_THAN"
    LESS_THAN_OR_EQUAL_TO = "LESS_THAN_OR_EQUAL_TO"
    CONTAINS = "CONTAINS"
    DOES_NOT_CONTAIN = "DOES_NOT_CONTAIN"
    STARTS_WITH = "STARTS_WITH"
    DOES_NOT_START_WITH = "DOES_NOT_START_WITH"
    ENDS_WITH = "ENDS_WITH"
    DOES_NOT_END_WITH = "DOES_NOT_END_WITH"
    EMPTY = "EMPTY"
    NOT_EMPTY = "NOT_EMPTY"


def _pattern(template: str) -> OperatorBuilder:
    def build(value: Any) -> Dict[str, Any]:
        return {"$regex": template.format(escape_pattern(value)), "$options": "i"}

    return build


def _negate(builder: OperatorBuilder) -> OperatorBuilder:
    def build(value: Any) -> Dict[str, Any]:
        return {"$not": builder(value)}

    return build


_contains = _pattern(".*{}.*")
_starts_with = _pattern("^{}")
_ends_with = _pattern("{}$")

QUERY_OPERATORS: Mapping[str, OperatorBuilder] = {
    QueryOperator.EQUAL_TO.value: lambda v: {"$eq": v},
    QueryOperator.NOT_EQUAL_TO.value: lambda v: {"$ne": v},
    QueryOperator.GREATER_THAN.value: lambda v: {"$gt": v},
    QueryOperator.GREATER_THAN_OR_EQUAL_TO.value: lambda v: {"$gte": v},
    QueryOperator.LESS_THAN.value: lambda v: {"$lt": v},
    QueryOperator.LESS_THAN_OR_EQUAL_TO.value: lambda v: {"$lte": v},
    QueryOperator.CONTAINS.value: _contains,
    QueryOperator.DOES_NOT_CONTAIN.value: _negate(_contains),
    QueryOperator.STARTS_WITH.value: _starts_with,
    QueryOperator.DOES_NOT_START_WITH.value: _negate(_starts_with),
    QueryOperator.ENDS_WITH.value: _ends_with,
    QueryOperator.DOES_NOT_END_WITH.value: _negate(_ends_with),
    QueryOperator.EMPTY.value: lambda _: {"$not": {"$exists": True}},
    QueryOperator.NOT_EMPTY.value: lambda _: {"$exists": True},
}

TEXT_OPERATORS: FrozenSet[str] = frozenset(
    op.value
    for op in (
        QueryOperator.CONTAINS,
        QueryOperator.DOES_NOT_CONTAIN,
        QueryOperator.STARTS_WITH,
        QueryOperator.DOES_NOT_START_WITH,
        QueryOperator.ENDS_WITH,
        QueryOperator.DOES_NOT_END_WITH,
    )
)

EXISTENCE_OPERATORS: FrozenSet[str] = frozenset(
    {QueryOperator.EMPTY.value, QueryOperator.NOT_EMPTY.value}
)

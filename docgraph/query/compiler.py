"""
Query compilation: disjunctive-normal-form queries -> store filters.

A query is a list of scenarios (OR); a scenario is a list of conditions
(AND); a condition is ``{"field", "operator", "value"}``::

    [
        [{"field": "title", "operator": "CONTAINS", "value": "wash"},
         {"field": "createdOn", "operator": "GREATER_THAN", "value": "2024-01-01"}],
        [{"field": "childTodos", "operator": "EQUAL_TO",
          "value": [[{"field": "title", "operator": "STARTS_WITH", "value": "Learn"}]]}],
    ]

compiles to ``{"$or": [{"$and": [...]}, {"$and": [...]}]}``.

A condition on a relation field carries a nested query for the related
Entity. The compiler runs an ids-only search for it and rewrites the
condition to "stored reference in matched ids". A nested search that matches
nothing makes its whole scenario unsatisfiable, and the scenario is dropped.

Invariants:
    - Zero surviving scenarios compile to CompiledQuery.matches_nothing,
      which callers answer without consulting the store
    - A non-object condition fails its scenario at once
    - Every other condition/scenario error is collected, keyed by index,
      and raised as one AggregateError after everything was attempted
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..errors import (
    AggregateError,
    DocGraphError,
    InvalidQueryFieldError,
    InvalidQueryOperatorError,
    InvalidQueryStructureError,
    InvalidQueryValueError,
)
from ..schema.types import Entity, EntityRef, EntityRefList, Primitive, PrimitiveKind
from ..validate import PRIMITIVE_COERCERS, Coercer
from .operators import EXISTENCE_OPERATORS, QUERY_OPERATORS, TEXT_OPERATORS, OperatorBuilder

logger = logging.getLogger(__name__)

ID_FIELD = "id"
NATIVE_ID_FIELD = "_id"

IdSearch = Callable[[Entity, Any], Awaitable[List[str]]]


@dataclass(frozen=True)
class Condition:
    """One ``field operator value`` test. Plain mappings work as well."""

    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class CompiledQuery:
    """Store filter plus the number of scenarios that survived compilation."""

    filter: Dict[str, Any]
    scenario_count: int

    @property
    def matches_nothing(self) -> bool:
        return self.scenario_count == 0


class QueryCompiler:
    """Compiles queries for one entity graph.

    Args:
        search_ids: Coroutine function running an ids-only search of a nested
            Entity for a nested query, returning matched string ids
        operators: Operator name to filter builder table
        coercers: Primitive kind to coercion table, used for date operands

    Example:
        >>> compiler = QueryCompiler(search_ids)
        >>> compiled = await compiler.compile(
        ...     [[{"field": "title", "operator": "CONTAINS", "value": "Wash"}]], todos
        ... )
        >>> compiled.filter
        {'$or': [{'$and': [{'title': {'$regex': '.*Wash.*', '$options': 'i'}}]}]}
    """

    def __init__(
        self,
        search_ids: IdSearch,
        operators: Mapping[str, OperatorBuilder] = QUERY_OPERATORS,
        coercers: Mapping[PrimitiveKind, Coercer] = PRIMITIVE_COERCERS,
    ) -> None:
        self._search_ids = search_ids
        self._operators = operators
        self._coercers = coercers

    async def compile(self, query: Any, entity: Entity) -> CompiledQuery:
        """Compile a whole query.

        Raises:
            InvalidQueryStructureError: If query is not a list
            AggregateError: Scenario errors keyed by scenario index
        """
        if not isinstance(query, (list, tuple)):
            raise InvalidQueryStructureError()

        scenarios: List[Dict[str, Any]] = []
        errors: Dict[int, Exception] = {}

        for index, scenario in enumerate(query):
            try:
                compiled = await self.compile_scenario(scenario, entity)
            except DocGraphError as e:
                errors[index] = e
                continue
            if compiled is not None:
                scenarios.append(compiled)

        if errors:
            raise AggregateError(errors)

        if not scenarios:
            logger.debug(
                "Query has no satisfiable scenario",
                extra={"entity": entity.name, "scenarios": len(query)},
            )
        return CompiledQuery({"$or": scenarios}, len(scenarios))

    async def compile_scenario(self, scenario: Any, entity: Entity) -> Optional[Dict[str, Any]]:
        """Compile one AND-scenario.

        Returns:
            The scenario filter, or None if the scenario cannot match anything

        Raises:
            InvalidQueryStructureError: If scenario is not a list, or one of
                its conditions is not an object
            AggregateError: Condition errors keyed by condition index
        """
        if not isinstance(scenario, (list, tuple)):
            raise InvalidQueryStructureError("Scenario must be a list of conditions")

        clauses: List[Dict[str, Any]] = []
        errors: Dict[int, Exception] = {}
        satisfiable = True

        for index, condition in enumerate(scenario):
            if isinstance(condition, Condition):
                condition = condition.to_dict()
            if not isinstance(condition, Mapping):
                raise InvalidQueryStructureError("Condition must be an object")
            try:
                clause = await self.compile_condition(condition, entity)
            except DocGraphError as e:
                errors[index] = e
                continue
            if clause is None:
                satisfiable = False
            else:
                clauses.append(clause)

        if errors:
            raise AggregateError(errors)
        if not satisfiable:
            return None
        return {"$and": clauses} if clauses else {}

    async def compile_condition(
        self,
        condition: Mapping[str, Any],
        entity: Entity,
    ) -> Optional[Dict[str, Any]]:
        """Compile one condition into a single-field filter.

        Returns:
            ``{field: fragment}``, or None for a relation condition whose
            nested query matched nothing
        """
        field_name = condition.get("field")
        operator = condition.get("operator")
        value = condition.get("value")

        if field_name != ID_FIELD and (
            not isinstance(field_name, str) or field_name not in entity.fields
        ):
            raise InvalidQueryFieldError(field_name)

        builder = self._operators.get(operator) if isinstance(operator, str) else None
        if builder is None:
            raise InvalidQueryOperatorError(operator)

        field_type = entity.fields.get(field_name)
        if isinstance(field_type, (EntityRef, EntityRefList)):
            return await self._compile_relation(field_name, field_type.entity, value)

        if isinstance(value, (Mapping, list, tuple, set)):
            raise InvalidQueryValueError(value)

        if operator in EXISTENCE_OPERATORS:
            operand = None
        elif field_name == ID_FIELD:
            if operator in TEXT_OPERATORS:
                raise InvalidQueryValueError(value)
            operand = self._native_id(entity, value)
        elif operator in TEXT_OPERATORS:
            if not isinstance(value, str):
                raise InvalidQueryValueError(value)
            operand = value
        elif isinstance(field_type, Primitive) and field_type.kind is PrimitiveKind.DATE:
            try:
                operand = self._coercers[PrimitiveKind.DATE](value)
            except ValueError as e:
                raise InvalidQueryValueError(value) from e
        else:
            operand = value

        target = NATIVE_ID_FIELD if field_name == ID_FIELD else field_name
        return {target: builder(operand)}

    async def _compile_relation(
        self,
        field_name: str,
        nested: Entity,
        nested_query: Any,
    ) -> Optional[Dict[str, Any]]:
        if not isinstance(nested_query, (list, tuple)):
            raise InvalidQueryValueError(nested_query)

        ids = await self._search_ids(nested, nested_query)
        if not ids:
            logger.debug(
                "Nested search matched nothing",
                extra={"field": field_name, "entity": nested.name},
            )
            return None
        return {field_name: {"$in": list(ids)}}

    @staticmethod
    def _native_id(entity: Entity, value: Any) -> Any:
        if not isinstance(value, str):
            raise InvalidQueryValueError(value)
        try:
            return entity.store.parse_id(value)
        except ValueError as e:
            raise InvalidQueryValueError(value) from e

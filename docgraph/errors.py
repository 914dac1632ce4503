"""
Error types for docgraph.

This module defines every exception raised by the library:
- DocGraphError: Base exception
- ConfigurationError: Schema config tree problems
- FieldTypeError: Item field value has the wrong type
- InvalidItemError / InvalidIdentifierError: Malformed payloads and ids
- InvalidQuery*Error: Malformed search queries
- StoreOperationError / DocumentNotFoundError / StoreConnectionError: Store failures
- AggregateError: Keyed collection of failures from a batch or cascade

Invariants:
    - All errors inherit from DocGraphError
    - Every error carries a stable ``code`` and JSON-friendly ``details``
    - Batch operations raise AggregateError, single operations raise the
      specific error directly

How to change safely:
    - Never change an existing ``code`` string, callers switch on it
    - New error kinds must subclass DocGraphError
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import Enum
from typing import Any, Dict, Hashable, Optional, Tuple


class Operation(str, Enum):
    """Store operations reported by StoreOperationError."""

    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    SEARCH = "SEARCH"


class DocGraphError(Exception):
    """Base exception for all docgraph errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCGRAPH_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Structured record of the error for transport by the caller."""
        return {"type": self.code, "message": self.message, **self.details}


class ConfigurationError(DocGraphError):
    """Schema config tree is incomplete or inconsistent.

    Raised when:
    - A config node lacks name, fields or connection
    - A field declaration names an unknown kind
    - A cascade policy names a field that is not a relation
    """

    def __init__(self, message: str, node_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"node": node_name},
        )
        self.node_name = node_name


class FieldTypeError(DocGraphError):
    """Field value does not match its declared type.

    ``expected_type`` is ``"Object"`` or ``"Array"`` for relation fields and
    the primitive kind name (``"date"``, ``"string"``...) otherwise.
    """

    def __init__(self, field_name: str, expected_type: str) -> None:
        super().__init__(
            f"Field '{field_name}' must be of type {expected_type}",
            code="TYPE_ERROR",
            details={"fieldName": field_name, "dataType": expected_type},
        )
        self.field_name = field_name
        self.expected_type = expected_type


class InvalidItemError(DocGraphError):
    """Item payload is neither a mapping nor a list of mappings."""

    def __init__(self, item: Any = None) -> None:
        super().__init__(
            f"Item must be an object or an array of objects, got {type(item).__name__}",
            code="INVALID_ITEM_ERROR",
        )


class InvalidIdentifierError(DocGraphError):
    """Identifier is missing, not a string, or not parseable by the store."""

    def __init__(self, item_id: Any) -> None:
        super().__init__(
            f"Invalid item id: {item_id!r}",
            code="INVALID_ITEM_ID_ERROR",
            details={"id": item_id if isinstance(item_id, str) else repr(item_id)},
        )
        self.item_id = item_id


class InvalidQueryStructureError(DocGraphError):
    """Query is not a list of scenarios, or a scenario/condition is malformed."""

    def __init__(self, message: str = "Query must be a list of lists of conditions") -> None:
        super().__init__(message, code="INVALID_QUERY_STRUCTURE")


class InvalidQueryFieldError(DocGraphError):
    """Condition names a field that the entity does not declare."""

    def __init__(self, field_name: Any) -> None:
        super().__init__(
            f"Unknown query field: {field_name!r}",
            code="INVALID_QUERY_FIELD",
            details={"field": field_name},
        )
        self.field_name = field_name


class InvalidQueryOperatorError(DocGraphError):
    """Condition uses an operator outside the operator table."""

    def __init__(self, operator: Any) -> None:
        super().__init__(
            f"Unknown query operator: {operator!r}",
            code="INVALID_QUERY_OPERATOR",
            details={"operator": operator},
        )
        self.operator = operator


class InvalidQueryValueError(DocGraphError):
    """Condition value cannot be used with its field or operator."""

    def __init__(self, value: Any) -> None:
        super().__init__(
            f"Invalid query value: {value!r}",
            code="INVALID_QUERY_VALUE",
            details={"value": repr(value)},
        )
        self.value = value


class StoreOperationError(DocGraphError):
    """The store failed to perform an operation.

    Attributes:
        operation: Which CRUD/search operation failed
    """

    def __init__(self, operation: Operation, message: Optional[str] = None) -> None:
        operation = Operation(operation)
        super().__init__(
            message or f"Store {operation.value} operation failed",
            code=f"DB_{operation.value}_ERROR",
            details={"operation": operation.value},
        )
        self.operation = operation


class DocumentNotFoundError(StoreOperationError):
    """No document exists under the requested identifier."""

    def __init__(self, operation: Operation, collection: str, item_id: str) -> None:
        super().__init__(
            operation,
            f"Document {item_id!r} not found in collection {collection!r}",
        )
        self.details.update({"collection": collection, "id": item_id})
        self.collection = collection
        self.item_id = item_id


class StoreConnectionError(DocGraphError):
    """Connecting to a store failed, or the handle is already closed."""

    def __init__(self, message: str, descriptor: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"descriptor": descriptor},
        )
        self.descriptor = descriptor


class AggregateError(DocGraphError):
    """Per-index or per-field failures collected from a partially failed operation.

    Every element of the batch was attempted before this was raised. Elements
    that succeeded are not rolled back; their results are kept in ``results``
    under the same keys used by ``errors``.

    Attributes:
        errors: Mapping of index (batches) or field name (cascades) to the error
        results: Mapping of index to the result of each successful element

    Example:
        >>> try:
        ...     await todos.create([good, bad])
        ... except AggregateError as exc:
        ...     created = exc.results[0]
        ...     failure = exc.errors[1]
    """

    def __init__(
        self,
        errors: Dict[Hashable, Exception],
        results: Optional[Dict[Hashable, Any]] = None,
    ) -> None:
        keys = ", ".join(str(k) for k in errors)
        super().__init__(
            f"{len(errors)} operation(s) failed at: {keys}",
            code="AGGREGATE_ERROR",
        )
        self.errors = dict(errors)
        self.results = dict(results or {})

    def leaves(self) -> Iterator[Tuple[Tuple[Hashable, ...], Exception]]:
        """Yield ``(path, error)`` for every non-aggregate error, depth first."""
        for key, error in self.errors.items():
            if isinstance(error, AggregateError):
                for path, leaf in error.leaves():
                    yield (key, *path), leaf
            else:
                yield (key,), error

    def to_dict(self) -> Dict[str, Any]:
        errors: Dict[str, Any] = {}
        for key, error in self.errors.items():
            if isinstance(error, DocGraphError):
                errors[str(key)] = error.to_dict()
            else:
                errors[str(key)] = {"type": type(error).__name__, "message": str(error)}
        return {"type": self.code, "message": self.message, "errors": errors}

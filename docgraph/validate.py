"""
Item validation and cleaning for docgraph.

This module checks raw items against an Entity's field schema and returns
cleaned copies:
- Declared fields are type-checked and coerced (dates)
- Undeclared fields are dropped without being looked at
- The item's ``id`` is carried through untouched

Invariants:
    - Validation is deterministic and never mutates the input
    - ``None`` is accepted for every field (it means "unset")
    - Batch cleaning attempts every item before raising
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Mapping, Sequence

from .errors import AggregateError, FieldTypeError, InvalidItemError
from .schema.types import EntityRef, EntityRefList, FieldType, PrimitiveKind

Coercer = Callable[[Any], Any]


def coerce_date(value: Any) -> datetime:
    """Coerce a date-like value into a timezone-aware datetime.

    Accepts datetimes (naive ones are taken as UTC), dates (midnight UTC),
    ISO-8601 strings (``Z`` suffix allowed) and numbers as epoch milliseconds.

    Raises:
        ValueError: If the value cannot be converted
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {value}") from e
    else:
        raise ValueError(f"Cannot convert {type(value).__name__} to date")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _expect(check: Callable[[Any], bool]) -> Coercer:
    def coerce(value: Any) -> Any:
        if not check(value):
            raise ValueError(f"Unexpected {type(value).__name__}")
        return value

    return coerce


def _coerce_binary(value: Any) -> bytes:
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError(f"Unexpected {type(value).__name__}")
    return bytes(value)


PRIMITIVE_COERCERS: Mapping[PrimitiveKind, Coercer] = {
    PrimitiveKind.STRING: _expect(lambda v: isinstance(v, str)),
    PrimitiveKind.NUMBER: _expect(
        lambda v: isinstance(v, (int, float)) and not isinstance(v, bool)
    ),
    PrimitiveKind.BOOLEAN: _expect(lambda v: isinstance(v, bool)),
    PrimitiveKind.DATE: coerce_date,
    PrimitiveKind.BINARY: _coerce_binary,
    PrimitiveKind.OBJECT: _expect(lambda v: isinstance(v, Mapping)),
    PrimitiveKind.ARRAY: _expect(lambda v: isinstance(v, (list, tuple))),
    PrimitiveKind.ANY: lambda v: v,
}


def clean_item(
    item: Any,
    fields: Mapping[str, FieldType],
    coercers: Mapping[PrimitiveKind, Coercer] = PRIMITIVE_COERCERS,
) -> Dict[str, Any]:
    """Validate an item against a field schema and return a cleaned copy.

    Args:
        item: Raw item
        fields: The Entity's field schema
        coercers: Primitive kind to coercion function table

    Returns:
        New dict with ``id`` (if present) and every declared field present
        on the item

    Raises:
        InvalidItemError: If item is not a mapping
        FieldTypeError: If a field value has the wrong type
    """
    if not isinstance(item, Mapping):
        raise InvalidItemError(item)

    cleaned: Dict[str, Any] = {}
    if "id" in item:
        cleaned["id"] = item["id"]

    for name, field_type in fields.items():
        if name not in item:
            continue
        value = item[name]

        if isinstance(field_type, EntityRef):
            if value is not None and not isinstance(value, Mapping):
                raise FieldTypeError(name, "Object")
            cleaned[name] = value
        elif isinstance(field_type, EntityRefList):
            if value is not None and not isinstance(value, (list, tuple)):
                raise FieldTypeError(name, "Array")
            cleaned[name] = list(value) if value is not None else None
        elif value is None:
            cleaned[name] = None
        else:
            try:
                cleaned[name] = coercers[field_type.kind](value)
            except ValueError as e:
                raise FieldTypeError(name, field_type.kind.value) from e

    return cleaned


def clean_items(
    items: Sequence[Any],
    fields: Mapping[str, FieldType],
    coercers: Mapping[PrimitiveKind, Coercer] = PRIMITIVE_COERCERS,
) -> list:
    """Clean every item of a batch.

    Every item is attempted. If any failed, one AggregateError is raised
    whose ``errors`` are keyed by index and whose ``results`` hold the
    cleaned items that passed, at their original index.

    Raises:
        InvalidItemError: If items is not a list
        AggregateError: If one or more items failed
    """
    if not isinstance(items, (list, tuple)):
        raise InvalidItemError(items)

    cleaned: Dict[int, Dict[str, Any]] = {}
    errors: Dict[int, Exception] = {}

    for index, item in enumerate(items):
        try:
            cleaned[index] = clean_item(item, fields, coercers)
        except (InvalidItemError, FieldTypeError) as e:
            errors[index] = e

    if errors:
        raise AggregateError(errors, cleaned)
    return [cleaned[index] for index in range(len(items))]

"""
Unit tests for item validation and cleaning.

Tests cover:
- Date coercion (ISO strings, epoch milliseconds, naive datetimes)
- Primitive type checks
- Relation shape checks
- Undeclared field dropping
- Batch cleaning with partial results
"""

from datetime import date, datetime, timezone

import pytest

from docgraph.errors import AggregateError, FieldTypeError, InvalidItemError
from docgraph.schema import Primitive, PrimitiveKind
from docgraph.schema.types import Entity, EntityRef, EntityRefList
from docgraph.store import MemoryStore
from docgraph.validate import clean_item, clean_items, coerce_date


class TestCoerceDate:
    """Tests for coerce_date."""

    def test_iso_string_with_z(self):
        """Z suffix means UTC."""
        assert coerce_date("2024-03-01T10:00:00Z") == datetime(
            2024, 3, 1, 10, 0, tzinfo=timezone.utc
        )

    def test_iso_string_with_offset(self):
        """Offsets are kept."""
        value = coerce_date("2024-03-01T12:00:00+02:00")
        assert value == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_epoch_milliseconds(self):
        """Numbers are epoch milliseconds."""
        assert coerce_date(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
        assert coerce_date(86_400_000) == datetime(1970, 1, 2, tzinfo=timezone.utc)

    def test_naive_datetime_is_utc(self):
        """Naive datetimes are taken as UTC."""
        assert coerce_date(datetime(2024, 1, 1)).tzinfo is timezone.utc

    def test_date(self):
        """Dates become midnight UTC."""
        assert coerce_date(date(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["not a date", True, [], {}])
    def test_invalid(self, value):
        """Unconvertible values raise ValueError."""
        with pytest.raises(ValueError):
            coerce_date(value)


class TestCleanItem:
    """Tests for clean_item."""

    @pytest.fixture
    def fields(self):
        """Field schema with every primitive kind and both relation shapes."""
        users = Entity(name="Users", store=MemoryStore("validate"))
        return {
            "title": Primitive(PrimitiveKind.STRING),
            "priority": Primitive(PrimitiveKind.NUMBER),
            "done": Primitive(PrimitiveKind.BOOLEAN),
            "createdOn": Primitive(PrimitiveKind.DATE),
            "meta": Primitive(PrimitiveKind.ANY),
            "assignee": EntityRef(users),
            "watchers": EntityRefList(users),
        }

    def test_valid_item(self, fields):
        """Valid fields are copied, dates coerced."""
        cleaned = clean_item(
            {"title": "Wash", "priority": 2, "done": False, "createdOn": "2024-01-01T00:00:00Z"},
            fields,
        )

        assert cleaned == {
            "title": "Wash",
            "priority": 2,
            "done": False,
            "createdOn": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }

    def test_id_is_kept(self, fields):
        """The id passes through unchecked."""
        assert clean_item({"id": "7", "title": "x"}, fields) == {"id": "7", "title": "x"}

    def test_undeclared_fields_dropped(self, fields):
        """Fields missing from the schema are dropped."""
        assert clean_item({"title": "x", "color": "red"}, fields) == {"title": "x"}

    def test_none_is_accepted(self, fields):
        """None passes for every field."""
        cleaned = clean_item({"title": None, "createdOn": None, "assignee": None}, fields)
        assert cleaned == {"title": None, "createdOn": None, "assignee": None}

    def test_input_not_mutated(self, fields):
        """The input item is left untouched."""
        item = {"createdOn": "2024-01-01T00:00:00Z", "color": "red"}
        clean_item(item, fields)
        assert item == {"createdOn": "2024-01-01T00:00:00Z", "color": "red"}

    def test_invalid_date(self, fields):
        """Unparseable dates name the date kind."""
        with pytest.raises(FieldTypeError) as exc_info:
            clean_item({"createdOn": "yesterday"}, fields)

        assert exc_info.value.field_name == "createdOn"
        assert exc_info.value.expected_type == "date"
        assert exc_info.value.code == "TYPE_ERROR"

    def test_boolean_is_not_number(self, fields):
        """Booleans are rejected for number fields."""
        with pytest.raises(FieldTypeError) as exc_info:
            clean_item({"priority": True}, fields)
        assert exc_info.value.expected_type == "number"

    def test_wrong_string(self, fields):
        """Non-strings are rejected for string fields."""
        with pytest.raises(FieldTypeError):
            clean_item({"title": 5}, fields)

    def test_single_relation_needs_object(self, fields):
        """Single relations take a mapping."""
        with pytest.raises(FieldTypeError) as exc_info:
            clean_item({"assignee": "someone"}, fields)
        assert exc_info.value.expected_type == "Object"

    def test_list_relation_needs_array(self, fields):
        """List relations take a list."""
        with pytest.raises(FieldTypeError) as exc_info:
            clean_item({"watchers": {"email": "a@b.c"}}, fields)
        assert exc_info.value.expected_type == "Array"

    def test_any_accepts_everything(self, fields):
        """The any kind is not checked."""
        assert clean_item({"meta": {"nested": [1]}}, fields) == {"meta": {"nested": [1]}}

    @pytest.mark.parametrize("item", ["text", 5, None, ["x"]])
    def test_non_mapping(self, fields, item):
        """Items must be mappings."""
        with pytest.raises(InvalidItemError):
            clean_item(item, fields)


class TestCleanItems:
    """Tests for clean_items."""

    FIELDS = {"title": Primitive(PrimitiveKind.STRING)}

    def test_all_valid(self):
        """Valid batches return cleaned items in order."""
        assert clean_items([{"title": "a"}, {"title": "b"}], self.FIELDS) == [
            {"title": "a"},
            {"title": "b"},
        ]

    def test_partial_failure(self):
        """Every item is attempted; errors and results are keyed by index."""
        with pytest.raises(AggregateError) as exc_info:
            clean_items([{"title": "a"}, {"title": 1}, "bad", {"title": "d"}], self.FIELDS)

        error = exc_info.value
        assert set(error.errors) == {1, 2}
        assert isinstance(error.errors[1], FieldTypeError)
        assert isinstance(error.errors[2], InvalidItemError)
        assert error.results == {0: {"title": "a"}, 3: {"title": "d"}}

    def test_not_a_list(self):
        """Batches must be lists."""
        with pytest.raises(InvalidItemError):
            clean_items({"title": "a"}, self.FIELDS)

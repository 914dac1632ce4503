"""
Unit tests for the filter matcher.

Tests cover:
- Logical operators ($or, $and)
- Equality on scalars and list fields
- Comparison type brackets
- Regex, $exists and $not
- Sorting and projection
"""

from datetime import datetime, timezone

import pytest

from docgraph.store.matcher import matches, project, sort_documents


class TestMatches:
    """Tests for matches()."""

    DOC = {
        "_id": 1,
        "title": "Wash Clothes",
        "priority": 3,
        "done": False,
        "createdOn": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "childTodos": ["4", "5"],
    }

    def test_empty_filter_matches(self):
        """An empty filter matches everything."""
        assert matches(self.DOC, {})

    def test_empty_or_matches_nothing(self):
        """An empty disjunction matches nothing."""
        assert not matches(self.DOC, {"$or": []})

    def test_or_and(self):
        """Nested $or/$and are evaluated."""
        assert matches(self.DOC, {"$or": [
            {"$and": [{"title": {"$eq": "nope"}}]},
            {"$and": [{"priority": {"$gte": 3}}, {"done": {"$eq": False}}]},
        ]})

    def test_bool_is_not_number(self):
        """False does not equal 0."""
        assert not matches(self.DOC, {"done": {"$eq": 0}})

    def test_comparison_brackets(self):
        """Comparisons across types never match."""
        assert not matches(self.DOC, {"priority": {"$gt": "1"}})
        assert matches(self.DOC, {"priority": {"$lt": 4}})

    def test_dates(self):
        """Dates compare chronologically."""
        assert matches(self.DOC, {"createdOn": {"$gt": datetime(2023, 1, 1, tzinfo=timezone.utc)}})

    def test_list_field_any_element(self):
        """A list field matches when any element does."""
        assert matches(self.DOC, {"childTodos": {"$in": ["5", "9"]}})
        assert not matches(self.DOC, {"childTodos": {"$in": ["9"]}})

    def test_regex_case_insensitive(self):
        """$options i makes patterns case-insensitive."""
        assert matches(self.DOC, {"title": {"$regex": ".*wash.*", "$options": "i"}})
        assert not matches(self.DOC, {"title": {"$regex": ".*wash.*"}})

    def test_not_regex_on_missing_field(self):
        """A negated pattern matches documents without the field."""
        assert matches(self.DOC, {"description": {"$not": {"$regex": "x"}}})

    def test_exists(self):
        """$exists tests key presence."""
        assert matches(self.DOC, {"done": {"$exists": True}})
        assert matches(self.DOC, {"description": {"$not": {"$exists": True}}})

    def test_unsupported_operator(self):
        """Unknown operators are rejected."""
        with pytest.raises(ValueError):
            matches(self.DOC, {"title": {"$where": "1"}})


class TestSortAndProject:
    """Tests for sort_documents() and project()."""

    def test_multi_key_sort(self):
        """Later keys break ties of earlier keys."""
        docs = [
            {"_id": 1, "a": 2, "b": "x"},
            {"_id": 2, "a": 1, "b": "y"},
            {"_id": 3, "a": 2, "b": "a"},
        ]

        result = sort_documents(docs, [("a", -1), ("b", 1)])

        assert [d["_id"] for d in result] == [3, 1, 2]

    def test_missing_sorts_first(self):
        """Missing values sort as null, before everything."""
        docs = [{"_id": 1, "a": 1}, {"_id": 2}]

        assert [d["_id"] for d in sort_documents(docs, [("a", 1)])] == [2, 1]

    def test_projection_keeps_id(self):
        """Projections keep _id unless excluded."""
        doc = {"_id": 1, "a": 1, "b": 2}

        assert project(doc, {"a": 1}) == {"_id": 1, "a": 1}
        assert project(doc, {"a": 1, "_id": 0}) == {"a": 1}
        assert project(doc, None) == doc

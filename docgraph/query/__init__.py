"""
Query module for docgraph.

Provides the fixed operator table and the compiler that turns
OR-of-AND queries into store filters, recursing into related entities.
"""

from .compiler import CompiledQuery, Condition, QueryCompiler
from .operators import (
    EXISTENCE_OPERATORS,
    QUERY_OPERATORS,
    TEXT_OPERATORS,
    QueryOperator,
    escape_pattern,
)

__all__ = [
    "CompiledQuery",
    "Condition",
    "QueryCompiler",
    "QueryOperator",
    "QUERY_OPERATORS",
    "TEXT_OPERATORS",
    "EXISTENCE_OPERATORS",
    "escape_pattern",
]

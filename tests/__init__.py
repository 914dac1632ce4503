"""
docgraph Test Suite.

This package contains:
- unit/: Unit tests (single module, in-memory stores)
- integration/: Integration tests (full Collection graphs on memory and SQLite stores)
"""

"""
Unit tests for schema resolution.

Tests cover:
- Field declaration forms (kind names, Python types, nested nodes)
- Self and mutual cycles resolving to shared Entities
- Node identity (equal-but-distinct nodes stay distinct)
- Cascade policy validation
- Configuration errors
"""

from datetime import datetime

import pytest

from docgraph.errors import ConfigurationError, StoreConnectionError
from docgraph.schema import (
    Entity,
    EntityRef,
    EntityRefList,
    Primitive,
    PrimitiveKind,
    ResolutionMemo,
    resolve_schema,
)
from docgraph.store import MemoryStore


class TestFieldDeclarations:
    """Tests for the accepted field declaration forms."""

    @pytest.mark.asyncio
    async def test_kind_names_and_python_types(self, connection):
        """Kind strings, PrimitiveKind members and Python types all resolve."""
        entity = await resolve_schema({
            "name": "Notes",
            "connection": connection,
            "fields": {
                "title": "string",
                "body": str,
                "pinned": bool,
                "rank": float,
                "createdOn": datetime,
                "blob": PrimitiveKind.BINARY,
                "meta": dict,
            },
        })

        assert entity.fields["title"] == Primitive(PrimitiveKind.STRING)
        assert entity.fields["body"] == Primitive(PrimitiveKind.STRING)
        assert entity.fields["pinned"] == Primitive(PrimitiveKind.BOOLEAN)
        assert entity.fields["rank"] == Primitive(PrimitiveKind.NUMBER)
        assert entity.fields["createdOn"] == Primitive(PrimitiveKind.DATE)
        assert entity.fields["blob"] == Primitive(PrimitiveKind.BINARY)
        assert entity.fields["meta"] == Primitive(PrimitiveKind.OBJECT)

    @pytest.mark.asyncio
    async def test_nested_node_and_list(self, connection):
        """A nested node becomes EntityRef, a one-element list EntityRefList."""
        user = {"name": "Users", "connection": connection, "fields": {"email": str}}
        team = {
            "name": "Teams",
            "connection": connection,
            "fields": {"lead": user, "members": [user]},
        }

        entity = await resolve_schema(team)

        assert isinstance(entity.fields["lead"], EntityRef)
        assert isinstance(entity.fields["members"], EntityRefList)
        assert entity.fields["lead"].entity is entity.fields["members"].entity
        assert entity.fields["lead"].entity.name == "Users"

    @pytest.mark.asyncio
    async def test_resolved_entity_is_accepted(self, connection):
        """An already resolved Entity can be used as a declaration."""
        users = await resolve_schema(
            {"name": "Users", "connection": connection, "fields": {"email": str}}
        )

        entity = await resolve_schema({
            "name": "Teams",
            "connection": connection,
            "fields": {"lead": users, "members": [users]},
        })

        assert entity.fields["lead"].entity is users
        assert entity.fields["members"].entity is users

    @pytest.mark.asyncio
    async def test_unknown_kind(self, connection):
        """Unknown kind names are configuration errors."""
        with pytest.raises(ConfigurationError) as exc_info:
            await resolve_schema({
                "name": "Notes",
                "connection": connection,
                "fields": {"title": "text"},
            })
        assert exc_info.value.node_name == "Notes"

    @pytest.mark.asyncio
    async def test_list_with_two_nodes(self, connection):
        """List declarations must hold exactly one node."""
        user = {"name": "Users", "connection": connection, "fields": {}}
        with pytest.raises(ConfigurationError):
            await resolve_schema({
                "name": "Teams",
                "connection": connection,
                "fields": {"members": [user, user]},
            })


class TestCycles:
    """Tests for cyclic config graphs."""

    @pytest.mark.asyncio
    async def test_self_reference(self, todo_config):
        """A node referencing itself resolves to one Entity referencing itself."""
        todos = await resolve_schema(todo_config)

        assert todos.fields["childTodos"].entity is todos

    @pytest.mark.asyncio
    async def test_mutual_reference(self, connection):
        """Two nodes referencing each other resolve to exactly two Entities."""
        author = {"name": "Authors", "connection": connection, "fields": {}}
        book = {"name": "Books", "connection": connection, "fields": {"author": author}}
        author["fields"]["books"] = [book]
        memo = ResolutionMemo()

        authors = await resolve_schema(author, memo=memo)

        books = authors.fields["books"].entity
        assert books.fields["author"].entity is authors
        assert len(memo) == 2

    @pytest.mark.asyncio
    async def test_equal_but_distinct_nodes(self, connection):
        """Structurally equal nodes that are different objects are different Entities."""
        first = {"name": "Tags", "connection": connection, "fields": {"label": str}}
        second = {"name": "Tags", "connection": connection, "fields": {"label": str}}

        entity = await resolve_schema({
            "name": "Posts",
            "connection": connection,
            "fields": {"primary": first, "secondary": second},
        })

        assert entity.fields["primary"].entity is not entity.fields["secondary"].entity

    @pytest.mark.asyncio
    async def test_repr_does_not_recurse(self, todo_config):
        """repr of a cyclic Entity terminates."""
        todos = await resolve_schema(todo_config)

        assert "Todos" in repr(todos)
        assert repr(todos.fields["childTodos"]) == "EntityRefList(Todos)"


class TestCascadePolicy:
    """Tests for cascade validation."""

    @pytest.mark.asyncio
    async def test_owned_fields(self, todo_config):
        """Owned relations are reported by owns()."""
        todos = await resolve_schema(todo_config)

        assert todos.owns("childTodos")
        assert not todos.owns("assignee")
        assert not todos.owns("title")

    @pytest.mark.asyncio
    async def test_cascade_on_primitive(self, connection):
        """Cascade on a primitive field is rejected."""
        with pytest.raises(ConfigurationError):
            await resolve_schema({
                "name": "Notes",
                "connection": connection,
                "fields": {"title": str},
                "cascade": {"title": True},
            })

    @pytest.mark.asyncio
    async def test_cascade_on_undeclared_field(self, connection):
        """Cascade on a field that is not declared is rejected."""
        with pytest.raises(ConfigurationError):
            await resolve_schema({
                "name": "Notes",
                "connection": connection,
                "fields": {"title": str},
                "cascade": {"children": True},
            })


class TestConfigurationErrors:
    """Tests for incomplete config nodes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["name", "fields", "connection"])
    async def test_missing_key(self, connection, missing):
        """Each of name, fields and connection is required."""
        node = {"name": "Notes", "connection": connection, "fields": {"title": str}}
        del node[missing]

        with pytest.raises(ConfigurationError) as exc_info:
            await resolve_schema(node)
        assert missing in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_key_in_nested_node(self, connection):
        """Errors in nested nodes surface from the root call."""
        with pytest.raises(ConfigurationError):
            await resolve_schema({
                "name": "Teams",
                "connection": connection,
                "fields": {"lead": {"name": "Users", "connection": connection}},
            })

    @pytest.mark.asyncio
    async def test_opened_stores_closed_on_error(self, connection, db_name):
        """Stores connected before a failing node are closed; passed handles stay open."""
        shared = MemoryStore(db_name)
        await shared.connect()
        memo = ResolutionMemo()

        with pytest.raises(ConfigurationError):
            await resolve_schema(
                {
                    "name": "Teams",
                    "connection": connection,
                    "fields": {
                        "owner": {"name": "Orgs", "connection": shared, "fields": {}},
                        "lead": {"name": "Users", "connection": connection, "fields": {"age": "color"}},
                    },
                },
                memo=memo,
            )

        stores = {entity.name: entity.store for entity in memo.entities()}
        assert not stores["Teams"].is_connected
        assert not stores["Users"].is_connected
        assert stores["Orgs"] is shared
        assert shared.is_connected
        assert memo.opened == []
        await shared.close()

    @pytest.mark.asyncio
    async def test_unsupported_scheme(self):
        """Unknown descriptor schemes fail to connect."""
        with pytest.raises(StoreConnectionError):
            await resolve_schema({
                "name": "Notes",
                "connection": "postgres://localhost/db",
                "fields": {},
            })


class TestSharedConnection:
    """Tests for passing an open store handle."""

    @pytest.mark.asyncio
    async def test_store_handle_is_shared(self, db_name):
        """Entities given the same handle share it."""
        store = MemoryStore(db_name)
        await store.connect()
        user = {"name": "Users", "connection": store, "fields": {}}

        entity = await resolve_schema(
            {"name": "Teams", "connection": store, "fields": {"lead": user}}
        )

        assert isinstance(entity, Entity)
        assert entity.store is store
        assert entity.fields["lead"].entity.store is store

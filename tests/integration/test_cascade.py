"""
Integration tests for cascading writes and deletes.

Tests cover:
- Deleting owned nested items with the owner
- Leaving non-owned nested items alone
- Pruning owned items dropped by an update
- Multi-level and cyclic ownership
- Saga behavior when a cascade step fails
"""

import pytest

from docgraph import open_collection
from docgraph.errors import AggregateError, DocumentNotFoundError, StoreOperationError


async def count(collection):
    return (await collection.search([[]])).total_items


class TestDeleteCascade:
    """Tests for delete() on owned relations."""

    @pytest.mark.asyncio
    async def test_owned_children_deleted(self, todos):
        """Owned nested items are deleted with the owner."""
        created = await todos.create({
            "title": "Parent",
            "childTodos": [{"title": "a"}, {"title": "b"}],
        })

        await todos.delete(created["id"])

        assert await count(todos) == 0

    @pytest.mark.asyncio
    async def test_non_owned_relation_kept(self, todos):
        """Non-owned nested items survive the owner."""
        created = await todos.create({"title": "Parent", "assignee": {"email": "x@y.z"}})
        users = todos.nested(todos.entity.fields["assignee"].entity)

        await todos.delete(created["id"])

        assert await count(users) == 1

    @pytest.mark.asyncio
    async def test_owned_single_relation(self, config_factory):
        """Owned single relations are deleted too."""
        todos = await open_collection(config_factory(cascade_assignee=True))
        users = todos.nested(todos.entity.fields["assignee"].entity)
        created = await todos.create({"title": "Parent", "assignee": {"email": "x@y.z"}})

        await todos.delete(created["id"])

        assert await count(users) == 0
        await todos.close(cascade_all=True)

    @pytest.mark.asyncio
    async def test_grandchildren_deleted(self, todos):
        """Ownership cascades through every level."""
        created = await todos.create({
            "title": "Root",
            "childTodos": [{"title": "Child", "childTodos": [{"title": "Grandchild"}]}],
        })

        await todos.delete(created["id"])

        assert await count(todos) == 0

    @pytest.mark.asyncio
    async def test_already_deleted_child(self, todos):
        """A child that is already gone does not block the owner's delete."""
        created = await todos.create({"title": "Parent", "childTodos": [{"title": "a"}]})
        [child] = (await todos.read(created["id"]))["childTodos"]
        await todos.delete(child["id"])

        await todos.delete(created["id"])

        assert await count(todos) == 0

    @pytest.mark.asyncio
    async def test_owned_self_reference(self, todos):
        """An item owning itself is deleted once."""
        created = await todos.create({"title": "Loop"})
        await todos.update({"id": created["id"], "childTodos": [{"id": created["id"]}]})

        await todos.delete(created["id"])

        assert await count(todos) == 0

    @pytest.mark.asyncio
    async def test_owned_cycle(self, todos):
        """Two items owning each other are both deleted."""
        first = await todos.create({"title": "First"})
        second = await todos.create({"title": "Second", "childTodos": [{"id": first["id"]}]})
        await todos.update({"id": first["id"], "childTodos": [{"id": second["id"]}]})

        await todos.delete(first["id"])

        assert await count(todos) == 0


class TestUpdatePrune:
    """Tests for update() on owned relations."""

    @pytest.mark.asyncio
    async def test_dropped_children_deleted(self, todos):
        """Owned items missing from the new list are deleted."""
        created = await todos.create({
            "title": "Parent",
            "childTodos": [{"title": "b1"}, {"title": "b2"}],
        })
        b1, b2 = (await todos.read(created["id"]))["childTodos"]

        await todos.update({"id": created["id"], "childTodos": [{"id": b1["id"]}]})

        item = await todos.read(created["id"])
        assert item["childTodos"] == [b1]
        with pytest.raises(DocumentNotFoundError):
            await todos.read(b2["id"])

    @pytest.mark.asyncio
    async def test_new_and_updated_children(self, todos):
        """Kept children are updated and new ones created."""
        created = await todos.create({"title": "Parent", "childTodos": [{"title": "b1"}]})
        [b1] = (await todos.read(created["id"]))["childTodos"]

        await todos.update({
            "id": created["id"],
            "childTodos": [{"id": b1["id"], "title": "b1 renamed"}, {"title": "b3"}],
        })

        item = await todos.read(created["id"])
        assert [child["title"] for child in item["childTodos"]] == ["b1 renamed", "b3"]
        assert item["childTodos"][0]["id"] == b1["id"]

    @pytest.mark.asyncio
    async def test_clearing_owned_list(self, todos):
        """None clears the list and deletes every owned child."""
        created = await todos.create({"title": "Parent", "childTodos": [{"title": "a"}]})

        await todos.update({"id": created["id"], "childTodos": None})

        assert await count(todos) == 1
        assert "childTodos" not in await todos.read(created["id"])

    @pytest.mark.asyncio
    async def test_non_owned_not_pruned(self, config_factory):
        """Dropping a non-owned child only removes the reference."""
        todos = await open_collection(config_factory(cascade_children=False))
        created = await todos.create({"title": "Parent", "childTodos": [{"title": "a"}]})

        await todos.update({"id": created["id"], "childTodos": []})

        assert await count(todos) == 2
        assert (await todos.read(created["id"]))["childTodos"] == []
        await todos.close(cascade_all=True)

    @pytest.mark.asyncio
    async def test_untouched_relation_not_pruned(self, todos):
        """Relations absent from the update are left alone."""
        created = await todos.create({"title": "Parent", "childTodos": [{"title": "a"}]})

        await todos.update({"id": created["id"], "title": "Renamed"})

        item = await todos.read(created["id"])
        assert len(item["childTodos"]) == 1


class TestSaga:
    """Tests for partially failing cascades."""

    @pytest.mark.asyncio
    async def test_failed_nested_update_skips_owner(self, todos):
        """A failing nested step leaves the owner document untouched."""
        created = await todos.create({"title": "Parent"})

        with pytest.raises(AggregateError) as exc_info:
            await todos.update({
                "id": created["id"],
                "title": "Renamed",
                "childTodos": [{"id": "404", "title": "missing"}],
            })

        [(path, leaf)] = list(exc_info.value.leaves())
        assert path == ("childTodos", 0)
        assert isinstance(leaf, DocumentNotFoundError)
        assert (await todos.read(created["id"]))["title"] == "Parent"

    @pytest.mark.asyncio
    async def test_failed_child_delete_keeps_owner(self, config_factory):
        """Owners stay when an owned nested item cannot be deleted."""
        todos = await open_collection(config_factory(cascade_assignee=True))
        created = await todos.create({"title": "Parent", "assignee": {"email": "x@y.z"}})
        await todos.entity.fields["assignee"].entity.store.close()

        with pytest.raises(AggregateError) as exc_info:
            await todos.delete(created["id"])

        error = exc_info.value.errors["assignee"]
        assert isinstance(error, StoreOperationError)
        assert error.code == "DB_DELETE_ERROR"
        assert await count(todos) == 1
        await todos.close(cascade_all=True)

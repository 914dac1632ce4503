"""
Shared fixtures for docgraph tests.

Every test gets its own named in-memory database, dropped afterwards, so
tests never see each other's documents.
"""

import uuid
from datetime import datetime

import pytest
import pytest_asyncio

from docgraph import Collection, open_collection
from docgraph.store import drop_memory_database


@pytest.fixture
def db_name():
    """Unique in-memory database name, dropped after the test."""
    name = f"test-{uuid.uuid4().hex[:12]}"
    yield name
    drop_memory_database(name)


@pytest.fixture
def connection(db_name):
    """Descriptor of the test's in-memory database."""
    return f"memory://{db_name}"


def make_todo_config(connection, cascade_children: bool = True, cascade_assignee: bool = False):
    """Build the Todos/Users config tree (Todos references itself)."""
    user = {
        "name": "Users",
        "connection": connection,
        "fields": {"email": str, "name": str},
    }
    todo = {"name": "Todos", "connection": connection, "fields": {}}
    todo["fields"] = {
        "title": str,
        "description": str,
        "createdOn": datetime,
        "priority": int,
        "done": bool,
        "assignee": user,
        "childTodos": [todo],
    }
    todo["cascade"] = {"childTodos": cascade_children, "assignee": cascade_assignee}
    return todo


@pytest.fixture
def todo_config(connection):
    """Config tree with owned childTodos and a non-owned assignee."""
    return make_todo_config(connection)


@pytest.fixture
def config_factory(connection):
    """Build Todos configs with a chosen cascade policy."""
    def factory(descriptor=None, **kwargs):
        return make_todo_config(descriptor or connection, **kwargs)
    return factory


@pytest_asyncio.fixture
async def todos(todo_config) -> Collection:
    """Open root Collection over todo_config, closed after the test."""
    collection = await open_collection(todo_config)
    yield collection
    await collection.close(cascade_all=True)

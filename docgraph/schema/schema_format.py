"""
YAML/JSON schema format for docgraph.

Schema documents describe entities by name and reference each other by name,
which lets files express the cyclic graphs the resolver supports. Parsing
produces the identity-shared config tree that ``resolve_schema()`` consumes.

Example schema:
    root: Todos
    connection: sqlite:///todos.db      # default for entities without one

    entities:
      - name: Todos
        fields:
          title: string
          description: string
          createdOn: date
          assignee: Users               # EntityRef
          childTodos: [Todos]           # EntityRefList (self-reference)
        cascade:
          childTodos: true

      - name: Users
        connection: memory://users
        fields:
          email: string
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

import yaml

from ..errors import ConfigurationError
from .types import PrimitiveKind

VALID_KINDS = {kind.value for kind in PrimitiveKind}


def parse_schema(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Build the config tree described by a parsed schema document.

    Args:
        data: Parsed YAML/JSON document

    Returns:
        Root config node (the entity named by ``root``, or the first entity)

    Raises:
        ConfigurationError: If the document is malformed
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("Schema document must be a mapping")

    entities = data.get("entities")
    if not isinstance(entities, list) or not entities:
        raise ConfigurationError("Schema document must list at least one entity")

    default_connection = data.get("connection")
    nodes: Dict[str, Dict[str, Any]] = {}
    errors: List[str] = []

    # First pass creates every node so references can point at any of them
    for entry in entities:
        if not isinstance(entry, Mapping) or not entry.get("name"):
            errors.append("Every entity needs a name")
            continue
        name = entry["name"]
        if name in nodes:
            errors.append(f"Duplicate entity name '{name}'")
            continue
        if name in VALID_KINDS:
            errors.append(f"Entity name '{name}' collides with a field kind")
            continue
        nodes[name] = {
            "name": name,
            "connection": entry.get("connection", default_connection),
            "fields": {},
            "cascade": dict(entry.get("cascade") or {}),
        }

    for entry in entities:
        if not isinstance(entry, Mapping) or entry.get("name") not in nodes:
            continue
        node = nodes[entry["name"]]
        for field_name, declaration in (entry.get("fields") or {}).items():
            try:
                node["fields"][field_name] = _field_declaration(declaration, nodes)
            except ValueError as e:
                errors.append(f"Entity '{node['name']}' field '{field_name}': {e}")

    if errors:
        raise ConfigurationError("Invalid schema: " + "; ".join(errors))

    root = data.get("root", entities[0].get("name"))
    if root not in nodes:
        raise ConfigurationError(f"Unknown root entity '{root}'")
    return nodes[root]


def _field_declaration(declaration: Any, nodes: Mapping[str, Dict[str, Any]]) -> Any:
    if isinstance(declaration, list):
        if len(declaration) != 1 or not isinstance(declaration[0], str) or declaration[0] not in nodes:
            raise ValueError(f"list fields must name exactly one entity, got {declaration}")
        return [nodes[declaration[0]]]
    if isinstance(declaration, str):
        if declaration in nodes:
            return nodes[declaration]
        if declaration in VALID_KINDS:
            return declaration
    raise ValueError(
        f"unknown kind or entity {declaration!r}. Valid kinds: {sorted(VALID_KINDS)}"
    )


def load_schema(text: str) -> Dict[str, Any]:
    """Parse schema text (YAML, of which JSON is a subset) into a config tree."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid schema document: {e}") from e
    return parse_schema(data)


def load_schema_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a ``.yaml``/``.yml``/``.json`` schema file into a config tree."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read schema file {path}: {e}") from e

    if path.suffix == ".json":
        try:
            return parse_schema(json.loads(text))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON schema file {path}: {e}") from e
    return load_schema(text)

"""Change extraction: reduce a pending write to a normalized change tree.

The result is a tagged tree of three node kinds:

- ``ScalarNode``: a JSON scalar (opaque values are rendered to strings).
- ``MappingNode``: ordered ``key -> ChangeTree`` entries.
- ``SequenceNode``: ordered list of ``ChangeTree``.

Extraction is a depth-first visit driven by the schema registry. It is pure:
the same input always yields an equal tree and nothing is written.

Example:
    extractor = ChangeExtractor(registry)
    tree = extractor.extract(ChangeSet(Resource(), {"name": "My name"}))
    tree.to_payload()  # {"name": "My name"}
"""

from __future__ import annotations

import enum
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import TYPE_CHECKING, Any, TypeAlias

from change_trail.core.exceptions import ConfigurationError

from .changes import NOT_LOADED, ChangeSet, unwrap
from .models import ChangeType

if TYPE_CHECKING:
    from .schema import EntitySchema, SchemaRegistry

_JSON_SCALARS = (str, int, float, bool)


@dataclass(frozen=True, slots=True)
class ScalarNode:
    value: Any = None

    def to_payload(self) -> Any:
        return self.value


@dataclass(frozen=True, slots=True)
class MappingNode:
    entries: tuple[tuple[str, ChangeTree], ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {key: node.to_payload() for key, node in self.entries}

    def get(self, key: str) -> ChangeTree | None:
        return next((node for k, node in self.entries if k == key), None)

    def keys(self) -> list[str]:
        return [key for key, _ in self.entries]

    def items(self) -> Iterator[tuple[str, ChangeTree]]:
        return iter(self.entries)

    def __contains__(self, key: object) -> bool:
        return any(k == key for k, _ in self.entries)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True, slots=True)
class SequenceNode:
    items: tuple[ChangeTree, ...] = ()

    def to_payload(self) -> list[Any]:
        return [node.to_payload() for node in self.items]

    def __len__(self) -> int:
        return len(self.items)


ChangeTree: TypeAlias = ScalarNode | MappingNode | SequenceNode

EMPTY = MappingNode()


class ChangeExtractor:
    """Turns change sets and entities into change trees using a schema registry."""

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry

    def extract(self, pending: Any) -> ChangeTree:
        """Extract the declared changes of ``pending``.

        - ChangeSet: its sparse changes, recursing into embeds/associations.
        - list/tuple: one result per element, order preserved.
        - plain mapping: taken as already-declared changes, leaves normalized.
        - anything else (a bare entity): no declared changes, empty mapping.
        """
        if isinstance(pending, ChangeSet):
            return self._extract_changeset(pending)
        if isinstance(pending, (list, tuple)):
            return SequenceNode(tuple(self.extract(item) for item in pending))
        if isinstance(pending, Mapping):
            return MappingNode(tuple((str(key), to_leaf(value)) for key, value in pending.items()))
        return EMPTY

    def payload_for(self, subject: Any, change_type: ChangeType) -> ChangeTree:
        """Change tree to record for ``subject`` under ``change_type``.

        Deletes ignore declared changes and capture the entity's full state.
        """
        if change_type is ChangeType.DELETE:
            return self.snapshot(unwrap(subject))
        return self.extract(subject)

    def snapshot(self, entity: Any) -> MappingNode:
        """Full field set of ``entity``; relations that were never loaded become null.

        Raises:
            ConfigurationError: If the entity type is not registered.
        """
        return self._snapshot(entity, self.registry.lookup(entity), frozenset())

    def _extract_changeset(self, changeset: ChangeSet) -> MappingNode:
        schema = self._schema_for(changeset.data)
        entries: list[tuple[str, ChangeTree]] = []
        for field, value in changeset.changes.items():
            if schema is not None and schema.is_nested(field):
                node = ScalarNode(None) if value is None else self.extract(value)
            elif _holds_nested(value):
                raise ConfigurationError(
                    "Nested changes on a field that is neither embed nor association",
                    details={"field": field, "entity_type": type(changeset.data).__name__},
                )
            else:
                node = to_leaf(value)
            entries.append((field, node))
        return MappingNode(tuple(entries))

    def _schema_for(self, data: Any) -> EntitySchema | None:
        # Mapping-backed change sets describe schemaless embedded documents
        if isinstance(data, Mapping):
            return None
        return self.registry.lookup(data)

    def _snapshot(self, entity: Any, schema: EntitySchema, path: frozenset[int]) -> MappingNode:
        path = path | {id(entity)}
        entries = tuple(
            (name, self._snapshot_value(schema.value_of(entity, name), path))
            for name in schema.field_names
        )
        return MappingNode(entries)

    def _snapshot_value(self, value: Any, path: frozenset[int]) -> ChangeTree:
        if value is NOT_LOADED or value is None:
            return ScalarNode(None)
        if isinstance(value, (list, tuple)):
            return SequenceNode(tuple(self._snapshot_value(item, path) for item in value))
        schema = self.registry.find(value)
        if schema is None:
            return to_leaf(value)
        if id(value) in path:
            # Back-reference to an entity already being captured
            return to_leaf(schema.identity(value))
        return self._snapshot(value, schema, path)


def to_leaf(value: Any) -> ChangeTree:
    """Normalize a non-nested value into a JSON-compatible tree.

    Plain mappings and lists keep their shape. Temporal values use ISO 8601,
    enums their value, and any other object its ``str()`` form.
    """
    if value is None or isinstance(value, _JSON_SCALARS):
        return ScalarNode(value)
    if isinstance(value, enum.Enum):
        return to_leaf(value.value)
    if isinstance(value, (datetime, date, time)):
        return ScalarNode(value.isoformat())
    if isinstance(value, Mapping):
        return MappingNode(tuple((str(key), to_leaf(item)) for key, item in value.items()))
    if isinstance(value, (list, tuple)):
        return SequenceNode(tuple(to_leaf(item) for item in value))
    if isinstance(value, (set, frozenset)):
        return SequenceNode(tuple(to_leaf(item) for item in sorted(value, key=repr)))
    return ScalarNode(str(value))


def _holds_nested(value: Any) -> bool:
    if isinstance(value, ChangeSet):
        return True
    return isinstance(value, (list, tuple)) and any(isinstance(item, ChangeSet) for item in value)

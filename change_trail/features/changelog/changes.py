"""Change sets: sparse, declared changes against an entity's last known state.

A ``ChangeSet`` pairs an entity (or, for schemaless embedded documents, a
plain mapping) with the fields that should change. Values equal to what the
entity already holds are dropped, so ``changes`` only ever contains real
differences. Nested change sets describe changes to embeds and associations.

Example:
    changeset = ChangeSet(Resource(), {"name": "My name"})
    changeset = ChangeSet.cast(resource, request_params, permitted=["name"])
    changeset.add_error("name", "is reserved")
    assert not changeset.is_valid
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Final, Self

from sqlalchemy import inspect
from sqlalchemy.exc import NoInspectionAvailable


class _NotLoaded:
    """Marker for relation data that was never loaded on a plain entity."""

    _instance: _NotLoaded | None = None

    def __new__(cls) -> _NotLoaded:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_LOADED"

    def __bool__(self) -> bool:
        return False


NOT_LOADED: Final = _NotLoaded()

_MISSING: Final = object()


def _current_value(data: Any, field: str) -> Any:
    if isinstance(data, Mapping):
        return data.get(field, _MISSING)
    # Mapped relationships may be unloaded; reading them would trigger IO
    state = instance_state(data)
    if state is not None and field in state.unloaded:
        return _MISSING
    return getattr(data, field, _MISSING)


def instance_state(obj: Any) -> Any:
    """SQLAlchemy instance state of a mapped object, or ``None`` for plain objects."""
    try:
        return inspect(obj)
    except NoInspectionAvailable:
        return None


class ChangeSet:
    """Declared changes for a single entity.

    Attributes:
        data: The entity being changed (or a plain mapping for embeds).
        changes: Sparse field -> new value mapping.
        errors: Validation errors as ``(field, message)`` pairs.
    """

    __slots__ = ("data", "changes", "errors")

    def __init__(self, data: Any, changes: Mapping[str, Any] | None = None) -> None:
        self.data = data
        self.changes: dict[str, Any] = {}
        self.errors: list[tuple[str, str]] = []
        for field, value in (changes or {}).items():
            self.put_change(field, value)

    @classmethod
    def cast(
        cls,
        data: Any,
        params: Mapping[str, Any],
        permitted: Iterable[str],
    ) -> Self:
        """Build a change set from untrusted params, keeping permitted keys only.

        Args:
            data: Entity the params apply to.
            params: Incoming values, e.g. a decoded request body.
            permitted: Field names allowed to change.

        Returns:
            ChangeSet holding the permitted, actually-different values.
        """
        allowed = set(permitted)
        return cls(data, {key: value for key, value in params.items() if key in allowed})

    @property
    def is_valid(self) -> bool:
        """Whether no validation errors have been added."""
        return not self.errors

    def put_change(self, field: str, value: Any) -> Self:
        """Record a change, dropping it when the entity already holds the value."""
        if not _holds_changes(value) and _current_value(self.data, field) == value:
            self.changes.pop(field, None)
        else:
            self.changes[field] = value
        return self

    def get_change(self, field: str, default: Any = None) -> Any:
        return self.changes.get(field, default)

    def add_error(self, field: str, message: str) -> Self:
        """Mark the change set invalid for ``field``."""
        self.errors.append((field, message))
        return self

    def apply(self) -> Any:
        """Write changes onto the entity and return it.

        Nested change sets are applied first. Mapping-backed change sets
        return a new merged dict rather than mutating the original.
        """
        resolved = {field: _apply_value(value) for field, value in self.changes.items()}
        if isinstance(self.data, Mapping):
            return {**self.data, **resolved}
        for field, value in resolved.items():
            setattr(self.data, field, value)
        return self.data

    def __repr__(self) -> str:
        return (
            f"<ChangeSet(data={type(self.data).__name__}, changes={self.changes!r}, "
            f"valid={self.is_valid})>"
        )


def _holds_changes(value: Any) -> bool:
    if isinstance(value, ChangeSet):
        return True
    return isinstance(value, list) and any(isinstance(item, ChangeSet) for item in value)


def _apply_value(value: Any) -> Any:
    if isinstance(value, ChangeSet):
        return value.apply()
    if isinstance(value, list):
        return [_apply_value(item) for item in value]
    return value


def unwrap(subject: Any) -> Any:
    """Return the entity behind a change set, or the subject itself."""
    return subject.data if isinstance(subject, ChangeSet) else subject

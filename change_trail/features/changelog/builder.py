"""Audit record assembly."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from change_trail.core.database.base import generate_uuid7
from change_trail.core.exceptions import AuditRecordError

from .changes import unwrap
from .models import ChangeType

if TYPE_CHECKING:
    from .extractor import ChangeTree
    from .schema import SchemaRegistry


class AuditRecord(BaseModel):
    """Immutable audit record, written exactly once.

    Attributes:
        id: Time-sortable identifier (UUID v7), generated at build time.
        actor_id: Who performed the change.
        resource: Logical table/collection name of the entity.
        resource_id: Entity primary key, stringified.
        payload: Redacted change tree as plain JSON data.
        change_type: insert, update, upsert or delete.
        created_at: UTC timestamp of the write.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=generate_uuid7)
    actor_id: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    resource_id: str = Field(min_length=1)
    payload: dict[str, Any] | list[Any]
    change_type: ChangeType
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_row(self) -> dict[str, Any]:
        """Column values for the audit table."""
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "changeset": self.payload,
            "change_type": self.change_type,
            "created_at": self.created_at,
        }


def build_audit_record(
    registry: SchemaRegistry,
    actor_id: Any,
    entity: Any,
    payload: ChangeTree,
    change_type: ChangeType | str,
) -> AuditRecord:
    """Assemble the audit record for ``entity``.

    Resource name and id come from the registered schema and the in-memory
    entity, so they are available even for an entity that was just deleted.

    Raises:
        ConfigurationError: If the entity type is not registered.
        AuditRecordError: If a required field is missing or invalid.
    """
    entity = unwrap(entity)
    schema = registry.lookup(entity)
    identity = schema.identity(entity)

    try:
        return AuditRecord(
            actor_id=str(actor_id) if actor_id is not None else "",
            resource=schema.resource,
            resource_id=str(identity) if identity is not None else "",
            payload=payload.to_payload(),
            change_type=ChangeType(change_type),
        )
    except ValidationError as exc:
        fields = sorted({str(error["loc"][0]) for error in exc.errors() if error["loc"]})
        raise AuditRecordError("Cannot build audit record", fields=fields) from exc
    except ValueError as exc:
        raise AuditRecordError("Unknown change type", fields=["change_type"]) from exc

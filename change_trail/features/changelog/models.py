"""Audit table definition.

Audit records are append-only: the table has a ``created_at`` column but no
update timestamp. The table name is configurable, so the table is built
with SQLAlchemy Core per (metadata, name) rather than declared as a single
mapped class.

Example:
    table = audit_log_table("audit_log")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Column, DateTime, Enum, Index, MetaData, String, Table, Uuid, func

from change_trail.core.database.base import Base, JSONDocument, generate_uuid7


class ChangeType(StrEnum):
    """Kind of primary mutation an audit record describes."""

    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"


def audit_log_table(name: str = "audit_log", metadata: MetaData | None = None) -> Table:
    """Return the audit table called ``name``, defining it on first use.

    Args:
        name: Table name (``TrailSettings.audit_table``).
        metadata: Metadata to attach to; defaults to ``Base.metadata``.

    Returns:
        The Core ``Table`` for audit records.
    """
    metadata = metadata if metadata is not None else Base.metadata
    if name in metadata.tables:
        return metadata.tables[name]
    return Table(
        name,
        metadata,
        Column(
            "id",
            Uuid,
            primary_key=True,
            default=generate_uuid7,
            comment="UUID v7 primary key (time-sortable)",
        ),
        Column("actor_id", String(255), nullable=False, comment="Who made the change"),
        Column("resource", String(255), nullable=False, comment="Logical table name"),
        Column("resource_id", String(255), nullable=False, comment="Stringified primary key"),
        Column("changeset", JSONDocument, nullable=False, comment="Extracted change payload"),
        Column(
            "change_type",
            Enum(
                ChangeType,
                name=f"{name}_change_type",
                native_enum=False,
                values_callable=lambda kinds: [kind.value for kind in kinds],
                validate_strings=True,
            ),
            nullable=False,
            comment="insert|update|upsert|delete",
        ),
        Column(
            "created_at",
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            comment="When the record was written",
        ),
        Index(f"ix_{name}_resource", "resource", "resource_id"),
        Index(f"ix_{name}_actor_id", "actor_id"),
        comment="Append-only change log",
    )


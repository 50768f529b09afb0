"""Declarative base and column helpers shared by the audit table and user models.

Examples:
    Application model registered with the change trail:
    class Resource(Base):
        __tablename__ = "resources"
        id: Mapped[int] = mapped_column(primary_key=True)
        name: Mapped[str | None] = mapped_column(String(255))
"""

from __future__ import annotations

import os
import time
import uuid

from sqlalchemy import JSON, MetaData
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# Consistent naming convention for database constraints
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONDocument = JSONB().with_variant(JSON(), "sqlite")


class Base(DeclarativeBase):
    """Declarative base carrying the shared metadata.

    The audit table is attached to ``Base.metadata`` unless another
    ``MetaData`` is passed explicitly, so ``create_all`` on this metadata
    creates both application tables and the audit table.
    """

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def generate_uuid7() -> uuid.UUID:
    """Generate a UUID v7 (time-sortable) identifier.

    The first 48 bits hold the Unix timestamp in milliseconds, so audit
    records sort by creation time when ordered by id.
    """
    timestamp_ms = int(time.time() * 1000)
    random_bytes = os.urandom(10)

    uuid_bytes = bytearray(16)
    uuid_bytes[0:6] = timestamp_ms.to_bytes(6, byteorder="big")
    uuid_bytes[6] = (random_bytes[0] & 0x0F) | 0x70  # Version 7
    uuid_bytes[7] = random_bytes[1]
    uuid_bytes[8] = (random_bytes[2] & 0x3F) | 0x80  # Variant
    uuid_bytes[9:16] = random_bytes[3:10]

    return uuid.UUID(bytes=bytes(uuid_bytes))

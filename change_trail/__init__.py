"""Audit trail for SQLAlchemy mutations.

Records who changed what, on which resource, of what kind and when, in the
same transaction as the change itself.
"""

from __future__ import annotations

from change_trail.core.exceptions import (
    AuditRecordError,
    AuditWriteFailure,
    BulkLengthMismatchError,
    ChangeTrailError,
    ConfigurationError,
    ValidationFailure,
)
from change_trail.core.settings import TrailSettings
from change_trail.features.changelog import (
    NOT_LOADED,
    REDACTED,
    AuditRecord,
    AuditRepository,
    BulkItemOutcome,
    ChangeSet,
    ChangeTrail,
    ChangeType,
    SchemaRegistry,
    embeds_many,
    embeds_one,
)

__version__ = "0.1.0"

__all__ = [
    "NOT_LOADED",
    "REDACTED",
    "AuditRecord",
    "AuditRecordError",
    "AuditRepository",
    "AuditWriteFailure",
    "BulkItemOutcome",
    "BulkLengthMismatchError",
    "ChangeSet",
    "ChangeTrail",
    "ChangeTrailError",
    "ChangeType",
    "ConfigurationError",
    "SchemaRegistry",
    "TrailSettings",
    "ValidationFailure",
    "embeds_many",
    "embeds_one",
]

"""Change trail: audit records written alongside the mutations that cause them.

Usage:
    from change_trail.features.changelog import ChangeSet, ChangeTrail, SchemaRegistry

    registry = SchemaRegistry()
    registry.register_model(Resource, embeds=[embeds_one("data")])

    trail = ChangeTrail(session, registry)
    resource = await trail.insert_and_log(ChangeSet(Resource(), {"name": "My name"}), "cowboy")
    resource = await trail.update_and_log(ChangeSet(resource, {"name": "New"}), "cowboy")
    await trail.delete_and_log(resource, "cowboy")

    # Entities persisted elsewhere
    await trail.log(resource, {"name": "Imported"}, "importer")
    await trail.log_bulk(resources, payloads, "importer")
"""

from __future__ import annotations

from .builder import AuditRecord, build_audit_record
from .bulk import BulkItemOutcome, BulkLogger
from .changes import NOT_LOADED, ChangeSet
from .coordinator import ChangeTrail, TrailResult
from .extractor import ChangeExtractor, ChangeTree, MappingNode, ScalarNode, SequenceNode, to_leaf
from .models import ChangeType, audit_log_table
from .redactor import REDACTED, redact
from .repository import AuditRepository
from .schema import (
    AssociationField,
    EmbedField,
    EntitySchema,
    SchemaRegistry,
    embeds_many,
    embeds_one,
)
from .storage import Mutation, Operation, SQLAlchemyStorage, TransactionalStorage
from .unit_of_work import UnitOfWork, UnitOfWorkResult

__all__ = [
    "NOT_LOADED",
    "REDACTED",
    "AssociationField",
    "AuditRecord",
    "AuditRepository",
    "BulkItemOutcome",
    "BulkLogger",
    "ChangeExtractor",
    "ChangeSet",
    "ChangeTrail",
    "ChangeTree",
    "ChangeType",
    "EmbedField",
    "EntitySchema",
    "MappingNode",
    "Mutation",
    "Operation",
    "SQLAlchemyStorage",
    "ScalarNode",
    "SchemaRegistry",
    "SequenceNode",
    "TrailResult",
    "TransactionalStorage",
    "UnitOfWork",
    "UnitOfWorkResult",
    "audit_log_table",
    "build_audit_record",
    "embeds_many",
    "embeds_one",
    "redact",
    "to_leaf",
]

"""Transaction coordinator: primary mutation plus audit record, one unit of work.

Each call runs two steps in a single transaction:

1. ``operation`` (barrier): insert/update/upsert/delete through storage. A
   failure rolls everything back and reaches the caller unchanged. A
   delete payload is captured here, before the delete runs.
2. ``changelog``: extract, redact, build and insert the audit record. Under
   the default "log" policy an insert failure is rolled back to a savepoint,
   reported as one ERROR diagnostic, and the primary mutation still commits.
   Under the "raise" policy it aborts the unit like a primary failure.

Schema or record-building problems (ConfigurationError) always abort.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from change_trail.core.exceptions import AuditWriteFailure
from change_trail.core.settings import TrailSettings, get_trail_settings
from change_trail.infra.logging import get_lazy_logger, log_context

from .builder import AuditRecord, build_audit_record
from .bulk import BulkItemOutcome, BulkLogger
from .changes import unwrap
from .extractor import EMPTY, ChangeExtractor
from .models import ChangeType, audit_log_table
from .redactor import redact
from .storage import Mutation, Operation, SQLAlchemyStorage, TransactionalStorage
from .unit_of_work import UnitOfWork

if TYPE_CHECKING:
    from sqlalchemy import MetaData
    from sqlalchemy.ext.asyncio import AsyncSession

    from .extractor import ChangeTree
    from .schema import SchemaRegistry

logger = logging.getLogger(__name__)
_lazy = get_lazy_logger(__name__)


@dataclass(frozen=True, slots=True)
class TrailResult:
    """Outcome of one coordinated call.

    Attributes:
        entity: The primary mutation's result.
        record: Audit record written, or ``None`` when the audit write failed.
        audit_error: The swallowed audit failure, if any.
    """

    entity: Any
    record: AuditRecord | None = None
    audit_error: AuditWriteFailure | None = None

    @property
    def logged(self) -> bool:
        return self.record is not None


class ChangeTrail:
    """Audit-logging front end for primary mutations.

    Example:
        registry = SchemaRegistry()
        registry.register_model(Resource)

        trail = ChangeTrail(session, registry, TrailSettings(redacted_fields={"password"}))
        resource = await trail.insert_and_log(ChangeSet(Resource(), {"name": "My name"}), "cowboy")
    """

    def __init__(
        self,
        storage: AsyncSession | TransactionalStorage,
        registry: SchemaRegistry,
        settings: TrailSettings | None = None,
        *,
        metadata: MetaData | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            storage: An ``AsyncSession`` (wrapped in SQLAlchemyStorage) or any
                TransactionalStorage implementation.
            registry: Schema registry for every audited entity type.
            settings: Trail settings; loaded from the environment when omitted.
            metadata: Metadata holding the audit table (defaults to Base.metadata).
        """
        self.storage: TransactionalStorage = (
            storage if isinstance(storage, TransactionalStorage) else SQLAlchemyStorage(storage)
        )
        self.registry = registry
        self.settings = settings or get_trail_settings()
        self.extractor = ChangeExtractor(registry)
        self.table = audit_log_table(self.settings.audit_table, metadata)
        self._bulk = BulkLogger(self)

    # ==========================================================================
    # Coordinated operations
    # ==========================================================================

    async def insert_and_log(self, subject: Any, actor_id: Any, **options: Any) -> Any:
        """Insert an entity or change set and record the declared changes."""
        result = await self.execute(Mutation(Operation.INSERT, subject, actor_id, options))
        return result.entity

    async def update_and_log(self, changeset: Any, actor_id: Any, **options: Any) -> Any:
        """Update a persisted entity and record the declared changes."""
        result = await self.execute(Mutation(Operation.UPDATE, changeset, actor_id, options))
        return result.entity

    async def upsert_and_log(self, subject: Any, actor_id: Any, **options: Any) -> Any:
        """Insert a new entity or update a persisted one, recorded as an upsert."""
        result = await self.execute(Mutation(Operation.UPSERT, subject, actor_id, options))
        return result.entity

    async def delete_and_log(self, subject: Any, actor_id: Any, **options: Any) -> Any:
        """Delete an entity and record its full state before removal."""
        result = await self.execute(Mutation(Operation.DELETE, subject, actor_id, options))
        return result.entity

    async def log(
        self,
        entity: Any,
        changes: Mapping[str, Any] | None,
        actor_id: Any,
        *,
        change_type: ChangeType = ChangeType.INSERT,
    ) -> Any:
        """Record changes for an entity that was persisted outside the trail."""
        result = await self.log_only(entity, changes, actor_id, change_type=change_type)
        return result.entity

    async def log_bulk(
        self,
        entities: Sequence[Any],
        changes: Sequence[Mapping[str, Any] | None],
        actor_id: Any,
    ) -> list[BulkItemOutcome]:
        """Record one audit entry per already-persisted entity, each in its own transaction."""
        return await self._bulk.log_bulk(entities, changes, actor_id)

    # ==========================================================================
    # Lower level entry points
    # ==========================================================================

    async def execute(self, mutation: Mutation) -> TrailResult:
        """Run a mutation and its audit step as one unit of work."""
        return await self._run(mutation, payload=None)

    async def log_only(
        self,
        entity: Any,
        changes: Mapping[str, Any] | None,
        actor_id: Any,
        *,
        change_type: ChangeType = ChangeType.INSERT,
    ) -> TrailResult:
        """Run only the audit step for ``entity`` with a pre-supplied payload."""
        payload = self.extractor.extract(changes) if changes is not None else EMPTY
        mutation = Mutation(Operation.LOG_ONLY, entity, actor_id)
        return await self._run(mutation, payload=payload, change_type=ChangeType(change_type))

    async def _run(
        self,
        mutation: Mutation,
        *,
        payload: ChangeTree | None,
        change_type: ChangeType | None = None,
    ) -> TrailResult:
        change_type = change_type or mutation.operation.change_type
        tolerated = () if self.settings.raise_on_audit_failure else (AuditWriteFailure,)

        async def operation(_: Mapping[str, Any]) -> Any:
            nonlocal payload
            if payload is None and change_type is ChangeType.DELETE:
                # Captured before the delete cascade loads unloaded relations
                payload = self.extractor.payload_for(mutation.subject, change_type)
            return await self.storage.execute(mutation)

        async def changelog(done: Mapping[str, Any]) -> AuditRecord:
            return await self._log_changes(
                done["operation"], mutation, change_type=change_type, payload=payload
            )

        uow = UnitOfWork(self.storage)
        uow.add("operation", operation, barrier=True)
        uow.add("changelog", changelog, tolerate=tolerated)

        schema = self.registry.find(unwrap(mutation.subject))
        with log_context(
            actor_id=str(mutation.actor_id),
            resource=schema.resource if schema is not None else None,
            operation=mutation.operation.value,
        ):
            outcome = await uow.run()

            failure = outcome.failures.get("changelog")
            if failure is not None:
                self._report_audit_failure(mutation, failure)

        return TrailResult(
            entity=outcome["operation"],
            record=outcome.results.get("changelog"),
            audit_error=failure,
        )

    async def _log_changes(
        self,
        entity: Any,
        mutation: Mutation,
        *,
        change_type: ChangeType,
        payload: ChangeTree | None,
    ) -> AuditRecord:
        if payload is None:
            payload = self.extractor.payload_for(mutation.subject, change_type)
        payload = redact(payload, self.settings.redacted_fields)
        record = build_audit_record(self.registry, mutation.actor_id, entity, payload, change_type)

        if self.settings.log_payloads:
            _lazy.debug("Audit payload for %s: %s", record.resource, payload.to_payload)

        await self.storage.insert_record(self.table, record.to_row())
        logger.debug(
            "Audit record stored",
            extra={
                "audit_id": str(record.id),
                "resource": record.resource,
                "resource_id": record.resource_id,
                "change_type": record.change_type.value,
            },
        )
        return record

    def _report_audit_failure(self, mutation: Mutation, failure: AuditWriteFailure) -> None:
        logger.error(
            "Failed to store changes in audit log: %r by actor %r. Reason: %s",
            mutation.subject,
            mutation.actor_id,
            failure.cause if failure.cause is not None else failure,
            extra={
                "subject": type(unwrap(mutation.subject)).__name__,
                "resource": failure.resource,
                "reason": repr(failure.cause or failure),
            },
        )

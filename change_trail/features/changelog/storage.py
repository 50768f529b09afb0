"""Transactional storage consumed by the coordinator.

``TransactionalStorage`` is the whole surface the core needs from a
database. ``SQLAlchemyStorage`` implements it on an ``AsyncSession``:

- primary mutations go through the unit of work (add/delete + flush), so the
  primary key is assigned before the audit record is built;
- storage-level rejections (integrity/data errors) become ValidationFailure;
- audit inserts are Core ``INSERT`` statements; any database error becomes
  AuditWriteFailure.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import inspect, insert
from sqlalchemy.exc import (
    DataError,
    IntegrityError,
    InvalidRequestError,
    NoInspectionAvailable,
    SQLAlchemyError,
)
from sqlalchemy.orm.exc import UnmappedInstanceError

from change_trail.core.exceptions import AuditWriteFailure, ConfigurationError, ValidationFailure
from change_trail.infra.logging import get_lazy_logger

from .changes import ChangeSet, unwrap
from .models import ChangeType

if TYPE_CHECKING:
    from sqlalchemy import Table
    from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

logger = logging.getLogger(__name__)
_lazy = get_lazy_logger(__name__)

SUPPORTED_OPTIONS = frozenset({"refresh"})


class Operation(StrEnum):
    """Primary operation requested from the coordinator."""

    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"
    LOG_ONLY = "log_only"

    @property
    def change_type(self) -> ChangeType:
        """Change type recorded for this operation (log-only records inserts)."""
        if self is Operation.LOG_ONLY:
            return ChangeType.INSERT
        return ChangeType(self.value)


@dataclass(frozen=True, slots=True)
class Mutation:
    """One coordinated call: what to do, to what, on whose behalf.

    Attributes:
        operation: Primary operation.
        subject: Entity or ChangeSet.
        actor_id: Who performs the change.
        options: Storage options (``refresh``: reload server-generated values).
    """

    operation: Operation
    subject: Any
    actor_id: Any
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = sorted(set(self.options) - SUPPORTED_OPTIONS)
        if unknown:
            raise ConfigurationError("Unsupported mutation options", details={"options": unknown})


@runtime_checkable
class TransactionalStorage(Protocol):
    """Storage collaborator interface."""

    async def begin_transaction(self) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    def savepoint(self) -> Any: ...

    async def execute(self, mutation: Mutation) -> Any: ...

    async def insert_record(self, table: Table, fields: Mapping[str, Any]) -> None: ...


def is_persisted(entity: Any) -> bool:
    """Whether a mapped instance already has a database row."""
    try:
        state = inspect(entity)
    except NoInspectionAvailable:
        return False
    return bool(state.persistent or state.detached)


class SQLAlchemyStorage:
    """``TransactionalStorage`` over an ``AsyncSession``.

    When the session is already inside a transaction (e.g. entities were just
    loaded through it), the unit of work runs in a SAVEPOINT and the caller
    keeps ownership of the outer commit.

    Example:
        async with session_factory() as session:
            storage = SQLAlchemyStorage(session)
            await storage.begin_transaction()
            entity = await storage.execute(Mutation(Operation.INSERT, resource, "cowboy"))
            await storage.commit()
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._transaction: AsyncSessionTransaction | None = None

    async def begin_transaction(self) -> None:
        if self._transaction is not None and self._transaction.is_active:
            raise ConfigurationError("A change trail transaction is already open on this session")
        if self.session.in_transaction():
            self._transaction = await self.session.begin_nested()
        else:
            self._transaction = await self.session.begin()

    async def commit(self) -> None:
        transaction, self._transaction = self._transaction, None
        if transaction is not None:
            await transaction.commit()

    async def rollback(self) -> None:
        # Also required after a failed flush left the transaction inactive
        transaction, self._transaction = self._transaction, None
        if transaction is not None:
            await transaction.rollback()

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Run a block in a SAVEPOINT, rolled back alone if the block raises."""
        async with self.session.begin_nested():
            yield

    async def execute(self, mutation: Mutation) -> Any:
        """Apply the primary mutation and flush it.

        Returns:
            The persisted entity.

        Raises:
            ValidationFailure: Invalid change set, or the database rejected the write.
            ConfigurationError: The subject is not a mapped entity.
        """
        subject = mutation.subject
        if isinstance(subject, ChangeSet) and not subject.is_valid:
            raise ValidationFailure("Change set is invalid", subject=subject, errors=subject.errors)

        if mutation.operation is Operation.LOG_ONLY:
            return unwrap(subject)

        try:
            entity = await self._apply(mutation.operation, subject)
            await self.session.flush()
        except (IntegrityError, DataError) as exc:
            raise ValidationFailure(
                "Storage rejected the mutation", subject=subject, cause=exc
            ) from exc
        except UnmappedInstanceError as exc:
            raise ConfigurationError(
                "Subject is not a mapped entity", details={"subject": type(unwrap(subject)).__name__}
            ) from exc
        except InvalidRequestError as exc:
            raise ValidationFailure(str(exc), subject=subject, cause=exc) from exc

        if mutation.options.get("refresh") and mutation.operation is not Operation.DELETE:
            await self.session.refresh(entity)

        _lazy.debug(
            lambda: f"{mutation.operation.value} flushed for {type(entity).__name__}"
        )
        return entity

    async def _apply(self, operation: Operation, subject: Any) -> Any:
        if operation is Operation.DELETE:
            entity = unwrap(subject)
            await self.session.delete(entity)
            return entity

        entity = unwrap(subject)
        if operation is Operation.UPDATE and not is_persisted(entity):
            raise ValidationFailure("Cannot update an entity that was never persisted", subject=subject)

        if isinstance(subject, ChangeSet):
            entity = subject.apply()
        self.session.add(entity)
        return entity

    async def insert_record(self, table: Table, fields: Mapping[str, Any]) -> None:
        """Append one row to ``table``.

        Raises:
            AuditWriteFailure: A value exceeds its column length, or the
                database rejected the insert.
        """
        # SQLite does not enforce VARCHAR lengths
        oversized = _oversized_columns(table, fields)
        if oversized:
            logger.debug(
                "Insert into %s rejected: %s too long",
                table.name,
                ", ".join(oversized),
                extra={"table": table.name, "columns": oversized},
            )
            raise AuditWriteFailure(
                f"Audit values exceed column length: {', '.join(oversized)}",
                actor_id=fields.get("actor_id"),
                resource=fields.get("resource"),
            )

        try:
            await self.session.execute(insert(table).values(**fields))
        except SQLAlchemyError as exc:
            logger.debug(
                "Insert into %s rejected",
                table.name,
                extra={"table": table.name, "error": type(exc).__name__},
            )
            raise AuditWriteFailure(
                "Audit insert rejected",
                actor_id=fields.get("actor_id"),
                resource=fields.get("resource"),
                cause=exc,
            ) from exc


def _oversized_columns(table: Table, fields: Mapping[str, Any]) -> list[str]:
    oversized = []
    for name, value in fields.items():
        column = table.c.get(name)
        length = getattr(column.type, "length", None) if column is not None else None
        if isinstance(value, str) and length is not None and len(value) > length:
            oversized.append(name)
    return oversized

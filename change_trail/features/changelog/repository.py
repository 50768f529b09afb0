"""Read access to the audit table.

Audit records are append-only, so the repository only reads.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import desc, func, select

from change_trail.infra.logging import get_lazy_logger

from .builder import AuditRecord

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

    from sqlalchemy import Table
    from sqlalchemy.ext.asyncio import AsyncSession

    from .models import ChangeType

_lazy = get_lazy_logger(__name__)


class AuditRepository:
    """Queries over one audit table.

    Example:
        repo = AuditRepository(trail.table)
        history = await repo.get_entity_history(session, "resources", "42")
    """

    def __init__(self, table: Table) -> None:
        self.table = table

    async def get(self, session: AsyncSession, record_id: UUID) -> AuditRecord | None:
        """Get one audit record by id."""
        stmt = select(self.table).where(self.table.c.id == record_id)
        row = (await session.execute(stmt)).mappings().one_or_none()
        _lazy.debug(lambda: f"audit.get({record_id}) -> {'found' if row else 'not found'}")
        return _to_record(row) if row is not None else None

    async def get_entity_history(
        self,
        session: AsyncSession,
        resource: str,
        resource_id: Any,
        *,
        limit: int = 100,
    ) -> Sequence[AuditRecord]:
        """Audit records for one entity, oldest first."""
        stmt = (
            select(self.table)
            .where(
                self.table.c.resource == resource,
                self.table.c.resource_id == str(resource_id),
            )
            .order_by(self.table.c.created_at, self.table.c.id)
            .limit(limit)
        )
        return [_to_record(row) for row in (await session.execute(stmt)).mappings()]

    async def list_by_actor(
        self,
        session: AsyncSession,
        actor_id: str,
        *,
        limit: int = 100,
    ) -> Sequence[AuditRecord]:
        """Most recent records written on behalf of ``actor_id``."""
        stmt = (
            select(self.table)
            .where(self.table.c.actor_id == actor_id)
            .order_by(desc(self.table.c.created_at), desc(self.table.c.id))
            .limit(limit)
        )
        return [_to_record(row) for row in (await session.execute(stmt)).mappings()]

    async def count(
        self,
        session: AsyncSession,
        *,
        resource: str | None = None,
        change_type: ChangeType | None = None,
    ) -> int:
        """Number of records, optionally filtered by resource and change type."""
        stmt = select(func.count()).select_from(self.table)
        if resource is not None:
            stmt = stmt.where(self.table.c.resource == resource)
        if change_type is not None:
            stmt = stmt.where(self.table.c.change_type == change_type)
        return (await session.execute(stmt)).scalar_one()


def _to_record(row: Any) -> AuditRecord:
    return AuditRecord(
        id=row["id"],
        actor_id=row["actor_id"],
        resource=row["resource"],
        resource_id=row["resource_id"],
        payload=row["changeset"],
        change_type=row["change_type"],
        created_at=row["created_at"],
    )

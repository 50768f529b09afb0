"""Bulk logging for entities persisted outside the trail.

Each (entity, payload) pair is logged in its own transaction, strictly in
order. A failure on one item is reported and recorded in its outcome; it
never affects the items before or after it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from change_trail.core.exceptions import BulkLengthMismatchError, ChangeTrailError

if TYPE_CHECKING:
    from .builder import AuditRecord
    from .coordinator import ChangeTrail

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BulkItemOutcome:
    """Result of logging one bulk item.

    Attributes:
        index: Position of the item in the input.
        entity: The entity the payload describes.
        record: Audit record written, or ``None`` on failure.
        error: Why no record was written.
    """

    index: int
    entity: Any
    record: AuditRecord | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None


class BulkLogger:
    """Applies the log-only path item by item."""

    def __init__(self, trail: ChangeTrail) -> None:
        self.trail = trail

    async def log_bulk(
        self,
        entities: Sequence[Any],
        changes: Sequence[Mapping[str, Any] | None],
        actor_id: Any,
    ) -> list[BulkItemOutcome]:
        """Log ``changes[i]`` for ``entities[i]``.

        Raises:
            BulkLengthMismatchError: If the sequences differ in length. Nothing
                is written in that case.
        """
        if len(entities) != len(changes):
            raise BulkLengthMismatchError(len(entities), len(changes))

        outcomes: list[BulkItemOutcome] = []
        for index, (entity, payload) in enumerate(zip(entities, changes, strict=True)):
            try:
                result = await self.trail.log_only(entity, payload, actor_id)
            except (ChangeTrailError, SQLAlchemyError) as exc:
                logger.error(
                    "Failed to store bulk changes in audit log: item %d by actor %r. Reason: %s",
                    index,
                    actor_id,
                    exc,
                    extra={"index": index, "subject": type(entity).__name__},
                )
                outcomes.append(BulkItemOutcome(index, entity, error=exc))
                continue
            outcomes.append(BulkItemOutcome(index, result.entity, result.record, result.audit_error))

        logger.info(
            "Bulk audit logging finished",
            extra={
                "items": len(outcomes),
                "logged": sum(1 for outcome in outcomes if outcome.ok),
            },
        )
        return outcomes

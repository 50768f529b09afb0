"""Change trail exceptions.

Errors are split by how the coordinator treats them:

- ValidationFailure: the primary mutation was rejected. Propagated verbatim,
  the unit of work is rolled back and no audit record is written.
- AuditWriteFailure: the audit insert was rejected. Recovered locally under
  the default "log" policy (the primary mutation still commits).
- ConfigurationError: missing schema metadata or an audit record that cannot
  be built. Always surfaced to the caller.
"""

from __future__ import annotations

from typing import Any


class ChangeTrailError(Exception):
    """Base exception for all change trail errors.

    Attributes:
        message: Human readable description.
        details: Structured context, rendered into ``str(error)``.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize change trail error.

        Args:
            message: Error description
            details: Additional context about the error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Format error message with details."""
        if self.details:
            details_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationFailure(ChangeTrailError):
    """Primary mutation rejected by change set validation or by storage.

    Attributes:
        subject: The change set or entity that was rejected.
        errors: Field level errors as ``(field, message)`` pairs.
        cause: Underlying storage exception, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        subject: Any = None,
        errors: list[tuple[str, str]] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.subject = subject
        self.errors = list(errors or [])
        self.cause = cause
        details: dict[str, Any] = {}
        if self.errors:
            details["errors"] = self.errors
        if cause is not None:
            details["cause"] = type(cause).__name__
        super().__init__(message, details=details)


class AuditWriteFailure(ChangeTrailError):
    """Audit record insert rejected by storage.

    Attributes:
        actor_id: Actor the record was written for.
        resource: Logical resource name of the audited entity.
        cause: Underlying storage exception.
    """

    def __init__(
        self,
        message: str,
        *,
        actor_id: str | None = None,
        resource: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.actor_id = actor_id
        self.resource = resource
        self.cause = cause
        super().__init__(
            message,
            details={
                "actor_id": actor_id,
                "resource": resource,
                "cause": repr(cause) if cause is not None else None,
            },
        )


class ConfigurationError(ChangeTrailError):
    """Missing or inconsistent configuration detected at call time."""


class AuditRecordError(ConfigurationError):
    """Audit record could not be built because required fields are missing.

    Attributes:
        fields: Names of the offending record fields.
    """

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        self.fields = list(fields or [])
        super().__init__(message, details={"fields": self.fields} if self.fields else None)


class BulkLengthMismatchError(ConfigurationError):
    """Entities and change payloads handed to bulk logging are not paired."""

    def __init__(self, entities: int, payloads: int) -> None:
        self.entities = entities
        self.payloads = payloads
        super().__init__(
            "Bulk logging requires one change payload per entity",
            details={"entities": entities, "payloads": payloads},
        )


__all__ = [
    "AuditRecordError",
    "AuditWriteFailure",
    "BulkLengthMismatchError",
    "ChangeTrailError",
    "ConfigurationError",
    "ValidationFailure",
]

"""Change trail configuration settings.

Environment variables use CHANGE_TRAIL_ prefix.
Example: CHANGE_TRAIL_AUDIT_TABLE="audit_log"
         CHANGE_TRAIL_REDACTED_FIELDS="password,token"
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

AuditFailurePolicy = Literal["log", "raise"]


class TrailSettings(BaseSettings):
    """Audit trail settings, supplied once at startup.

    The schema registry is not part of this object: it is built in code and
    handed to the coordinator next to these settings.
    """

    # ──────────────────────────────────────────────────────────────
    # Storage
    # ──────────────────────────────────────────────────────────────

    audit_table: str = Field(
        default="audit_log",
        min_length=1,
        max_length=63,
        description="Name of the table audit records are appended to",
    )

    # ──────────────────────────────────────────────────────────────
    # Redaction
    # ──────────────────────────────────────────────────────────────

    redacted_fields: Annotated[frozenset[str], NoDecode] = Field(
        default_factory=frozenset,
        description="Top-level payload keys replaced with the redaction marker",
    )

    # ──────────────────────────────────────────────────────────────
    # Failure handling
    # ──────────────────────────────────────────────────────────────

    audit_failure_policy: AuditFailurePolicy = Field(
        default="log",
        description=(
            "What to do when the audit insert fails: 'log' commits the primary "
            "mutation and emits a diagnostic, 'raise' aborts the whole unit"
        ),
    )

    log_payloads: bool = Field(
        default=False,
        description="Include change payloads in debug logs (may contain sensitive data)",
    )

    model_config = SettingsConfigDict(
        env_prefix="CHANGE_TRAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @field_validator("redacted_fields", mode="before")
    @classmethod
    def _split_redacted_fields(cls, value: Any) -> Any:
        """Accept a comma separated string in addition to JSON arrays."""
        if isinstance(value, str):
            if value.lstrip().startswith("["):
                return frozenset(json.loads(value))
            return frozenset(part.strip() for part in value.split(",") if part.strip())
        return value

    @property
    def raise_on_audit_failure(self) -> bool:
        """Whether audit write failures abort the unit of work."""
        return self.audit_failure_policy == "raise"

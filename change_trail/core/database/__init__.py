"""Database primitives shared across the change trail."""

from __future__ import annotations

from .base import NAMING_CONVENTION, Base, JSONDocument, generate_uuid7

__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "JSONDocument",
    "generate_uuid7",
]

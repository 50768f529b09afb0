"""Top-level field redaction.

Only the first level of the payload is inspected. Keys nested inside embeds
or associations pass through unchanged even when they match the denylist.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TypeVar

from .extractor import MappingNode, ScalarNode

REDACTED = "[REDACTED]"

_MARKER = ScalarNode(REDACTED)

T = TypeVar("T")


def redact(payload: T, denylist: Iterable[str] | None) -> T:
    """Replace denylisted top-level values with ``"[REDACTED]"``.

    Args:
        payload: Extracted change tree.
        denylist: Field names to hide; empty or ``None`` leaves the payload as is.

    Returns:
        A new tree with redacted values, or ``payload`` itself when nothing matched.
    """
    if not denylist or not isinstance(payload, MappingNode):
        return payload
    hidden = frozenset(denylist)
    if not any(key in hidden for key in payload.keys()):
        return payload
    return MappingNode(  # type: ignore[return-value]
        tuple((key, _MARKER if key in hidden else node) for key, node in payload.items())
    )

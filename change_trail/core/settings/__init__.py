"""Settings for the change trail, loaded from the environment."""

from __future__ import annotations

from .loader import clear_settings_cache, get_logging_settings, get_trail_settings
from .logs import LoggingSettings, LogLevel
from .trail import AuditFailurePolicy, TrailSettings

__all__ = [
    "AuditFailurePolicy",
    "LogLevel",
    "LoggingSettings",
    "TrailSettings",
    "clear_settings_cache",
    "get_logging_settings",
    "get_trail_settings",
]

"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the
process.

Testing:
    In tests, clear the cache to force reload:
    get_trail_settings.cache_clear()

    Or construct settings directly:
    settings = TrailSettings(redacted_fields={"password"})
"""

from __future__ import annotations

from functools import lru_cache

from .logs import LoggingSettings
from .trail import TrailSettings


@lru_cache(maxsize=1)
def get_trail_settings() -> TrailSettings:
    """Get cached change trail settings.

    Returns:
        Validated and frozen TrailSettings instance.
    """
    return TrailSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings.

    Returns:
        Validated and frozen LoggingSettings instance.
    """
    return LoggingSettings()


def clear_settings_cache() -> None:
    """Drop every cached settings instance."""
    get_trail_settings.cache_clear()
    get_logging_settings.cache_clear()

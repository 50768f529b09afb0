"""Logging infrastructure.

Basic usage:
    import logging

    from change_trail.infra.logging import log_context, setup_logging

    setup_logging()
    logger = logging.getLogger(__name__)

    with log_context(actor_id="cowboy"):
        logger.info("Inserting resource")  # record includes actor_id
"""

from change_trail.infra.logging.config import configure_logging, setup_logging
from change_trail.infra.logging.context import (
    ContextInjectingFilter,
    clear_log_context,
    get_log_context,
    log_context,
    set_log_context,
)
from change_trail.infra.logging.formatters import JSONFormatter
from change_trail.infra.logging.lazy import LazyLoggerAdapter, get_lazy_logger

__all__ = [
    "ContextInjectingFilter",
    "JSONFormatter",
    "LazyLoggerAdapter",
    "clear_log_context",
    "configure_logging",
    "get_lazy_logger",
    "get_log_context",
    "log_context",
    "set_log_context",
    "setup_logging",
]

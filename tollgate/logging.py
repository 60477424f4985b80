"""structlog configuration.

Modules obtain loggers with ``structlog.get_logger()``; this module wires
the processor chain once at startup.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

from tollgate.config import LoggingConfig
from tollgate.utils.masking import mask_sensitive

# Event-dict keys owned by structlog itself
_RESERVED_KEYS = frozenset({"event", "level", "timestamp", "logger", "exc_info", "stack_info"})


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask sensitive fields before rendering."""
    reserved = {k: v for k, v in event_dict.items() if k in _RESERVED_KEYS}
    payload = {k: v for k, v in event_dict.items() if k not in _RESERVED_KEYS}
    masked = mask_sensitive(payload)
    masked.update(reserved)
    return masked


def configure_logging(config: LoggingConfig) -> None:
    """Configure structlog processors and level filtering."""
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer: Any
    if config.renderer == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

"""
Shared logging configuration for the query memoization layer.
"""

import sys
import structlog
import logging
import time
from typing import Any, Dict, Optional

from query_memoize.shared.config import get_config


def configure_logging(service_name: str, log_level: Optional[str] = None) -> None:
    """Configure structured logging for the host service.

    The level defaults to ``log_level`` from the environment settings.
    """
    log_level = log_level or get_config().log_level

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    structlog.get_logger("query_cache").info("Logging configured", host_service=service_name)


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add component context to log events."""
    # query_cache.memoizer -> query_cache
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def drop_event(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Processor that discards every event."""
    raise structlog.DropEvent


def get_logger(name: str, muted: bool = False) -> structlog.BoundLogger:
    """Get a structured logger instance.

    A muted logger accepts the same calls but drops every event, which is how
    ``CacheConfig.logs_disabled`` silences the cache layer.
    """
    if muted:
        return structlog.wrap_logger(None, processors=[drop_event], logger_name=name)
    return structlog.get_logger(name)

"""
Structured logging configuration.

Wraps structlog so every module can do:

    from requestflow.observability import get_logger

    logger = get_logger(__name__)
    logger.debug("batch flushed", key="tasks:select", size=4)

Call configure_logging() once at application start-up to pick the
renderer (console for development, JSON for log shippers).
"""

import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import structlog


class LogFormat(Enum):
    """Output renderer."""

    CONSOLE = "console"
    JSON = "json"


@dataclass
class LogConfig:
    """
    Logging configuration.

    Attributes:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        format: Renderer to use
        add_timestamp: Whether to stamp events with an ISO timestamp
        static_fields: Key/value pairs bound to every event
    """

    level: str = "INFO"
    format: LogFormat = LogFormat.CONSOLE
    add_timestamp: bool = True
    static_fields: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if logging.getLevelName(self.level.upper()) == f"Level {self.level.upper()}":
            raise ValueError(f"Unknown log level: {self.level}")
        self.level = self.level.upper()


_configured = False


def configure_logging(config: Optional[LogConfig] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; the last call wins.

    Args:
        config: Logging configuration (defaults to console/INFO)
    """
    global _configured
    config = config or LogConfig()
    level = getattr(logging, config.level)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
    ]
    if config.add_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))
    processors.append(structlog.processors.StackInfoRenderer())
    processors.append(structlog.processors.format_exc_info)

    if config.format == LogFormat.JSON:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    if config.static_fields:
        structlog.contextvars.bind_contextvars(**config.static_fields)

    _configured = True


def get_logger(name: Optional[str] = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger.

    Args:
        name: Logger name, usually __name__
        **initial_values: Values bound to every event of this logger

    Returns:
        Bound logger
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def is_configured() -> bool:
    """Whether configure_logging() has been called."""
    return _configured

"""
Observability Module.

This module provides structured logging for requestflow.

Components:
- logging: Structured logging configuration with structlog
"""

from requestflow.observability.logging import (
    configure_logging,
    get_logger,
    is_configured,
    LogConfig,
    LogFormat,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "is_configured",
    "LogConfig",
    "LogFormat",
]

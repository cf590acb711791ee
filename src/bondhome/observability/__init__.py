"""Observability: structured logging."""

from bondhome.observability.logging_config import (
    LogFilter,
    LogFormat,
    LoggingConfig,
    configure_bondhome_logging,
)

__all__ = [
    "LogFilter",
    "LogFormat",
    "LoggingConfig",
    "configure_bondhome_logging",
]

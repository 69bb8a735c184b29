"""Observability exports: structured JSON-lines logging and correlation scopes."""

from sitebox_orchestrator.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]

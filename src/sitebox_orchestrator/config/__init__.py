"""Configuration loading, validation and redaction."""

from sitebox_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    resolve_storage_password,
)
from sitebox_orchestrator.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    default_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG_FILE",
    "default_config",
    "dump_effective_config",
    "load_config",
    "resolve_storage_password",
    "validate_config",
]

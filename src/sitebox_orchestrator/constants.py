"""Stable constants shared across orchestrator components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
SANDBOX_RECORD_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".sitebox/state")
SITES_ROOT: Final[PurePosixPath] = PurePosixPath("sites")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".sitebox/logs")

# Layout inside the state directory.
SANDBOXES_DIRNAME: Final[str] = "sandboxes"
QUARANTINE_DIRNAME: Final[str] = "quarantine"
BACKUPS_DIRNAME: Final[str] = "backups"
RUNTIME_DIRNAME: Final[str] = "runtime"
RECORD_FILENAME: Final[str] = "sandbox.json"
HOST_LOCK_FILENAME: Final[str] = "supervisor.lock"
DOMAIN_MAP_FILENAME: Final[str] = "domains.json"
SERVER_LOG_FILENAME: Final[str] = "server.log"

# Port leasing.
DEFAULT_PORT_RANGE: Final[tuple[int, int]] = (8000, 9000)
DEFAULT_RESERVED_PORTS: Final[tuple[int, ...]] = (8080, 8443, 8888, 9000)

# Default listening ports for client-server storage engines.
STORAGE_DEFAULT_PORTS: Final[dict[str, int]] = {"mysql": 3306, "mariadb": 3307}

# Runtime extensions each storage backend needs.
EMBEDDED_RUNTIME_EXTENSIONS: Final[tuple[str, ...]] = ("pdo_sqlite", "sqlite3")
CLIENT_SERVER_RUNTIME_EXTENSIONS: Final[tuple[str, ...]] = ("mysqli", "pdo_mysql")

# Environment variable prefix used for config overrides and application settings.
ENV_PREFIX: Final[str] = "SITEBOX_"

__all__ = [
    "BACKUPS_DIRNAME",
    "CLIENT_SERVER_RUNTIME_EXTENSIONS",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_PORT_RANGE",
    "DEFAULT_RESERVED_PORTS",
    "DOMAIN_MAP_FILENAME",
    "EMBEDDED_RUNTIME_EXTENSIONS",
    "ENV_PREFIX",
    "HOST_LOCK_FILENAME",
    "LOG_DIR",
    "QUARANTINE_DIRNAME",
    "RECORD_FILENAME",
    "RUNTIME_DIRNAME",
    "SANDBOXES_DIRNAME",
    "SANDBOX_RECORD_SCHEMA_VERSION",
    "SERVER_LOG_FILENAME",
    "SITES_ROOT",
    "STATE_DIR",
    "STORAGE_DEFAULT_PORTS",
]

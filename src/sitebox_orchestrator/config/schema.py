"""
sitebox-orchestrator — configuration schema and validation.

File: src/sitebox_orchestrator/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded secrets; database passwords are referenced through ``*_env`` keys only.
- Cross-field rules: port range ordering, default engine/version consistency.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from sitebox_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_PORT_RANGE,
    DEFAULT_RESERVED_PORTS,
    LOG_DIR,
    SITES_ROOT,
    STATE_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "fast")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_VERSION_PATTERN = re.compile(r"^\d+\.\d+(?:\.\d+)?$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "private", "credential", "credentials", "auth"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_dir"),
    ("paths", "sites_root"),
    ("observability", "log_dir"),
)
# List-of-path fields normalized element-wise.
PATH_LIST_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("storage", "install_roots"),)


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    state_dir: str
    sites_root: str


class PortsConfig(TypedDict):
    range_start: int
    range_end: int
    reserved: list[int]
    probe_host: str


class RuntimeConfig(TypedDict):
    default_version: str
    binary: str
    cgi_binary: str
    binaries: dict[str, str]


class ServerSettings(TypedDict):
    default_engine: Literal["builtin", "nginx", "apache"]
    bind_host: str
    document_root: str
    nginx_binary: str
    apache_binary: str
    apache_runtime_module: str


class SupervisorConfig(TypedDict):
    startup_timeout_seconds: float
    readiness_poll_attempts: int
    readiness_poll_interval_seconds: float
    stop_grace_seconds: float
    health_interval_seconds: float
    health_failure_threshold: int


class StorageConfig(TypedDict):
    default_engine: Literal["sqlite", "mysql", "mariadb"]
    host: str
    user: str
    password_env: str
    database_prefix: str
    install_roots: list[str]
    start_grace_seconds: float
    start_poll_interval_seconds: float
    init_timeout_seconds: float
    handshake_timeout_seconds: float
    allow_protocol_substitution: bool


class SwapConfig(TypedDict):
    timeout_seconds: float
    functional_check_path: str
    functional_check_timeout_seconds: float


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    redact_secrets: bool


class SiteboxConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    ports: PortsConfig
    runtime: RuntimeConfig
    server: ServerSettings
    supervisor: SupervisorConfig
    storage: StorageConfig
    swap: SwapConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, object]]


DEFAULT_CONFIG: Final[SiteboxConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "paths": {
        "state_dir": str(STATE_DIR),
        "sites_root": str(SITES_ROOT),
    },
    "ports": {
        "range_start": DEFAULT_PORT_RANGE[0],
        "range_end": DEFAULT_PORT_RANGE[1],
        "reserved": list(DEFAULT_RESERVED_PORTS),
        "probe_host": "127.0.0.1",
    },
    "runtime": {
        "default_version": "8.2",
        "binary": "php",
        "cgi_binary": "php-cgi",
        "binaries": {},
    },
    "server": {
        "default_engine": "builtin",
        "bind_host": "127.0.0.1",
        "document_root": ".",
        "nginx_binary": "nginx",
        "apache_binary": "httpd",
        "apache_runtime_module": "",
    },
    "supervisor": {
        "startup_timeout_seconds": 15.0,
        "readiness_poll_attempts": 10,
        "readiness_poll_interval_seconds": 0.5,
        "stop_grace_seconds": 5.0,
        "health_interval_seconds": 5.0,
        "health_failure_threshold": 3,
    },
    "storage": {
        "default_engine": "sqlite",
        "host": "127.0.0.1",
        "user": "root",
        "password_env": "SITEBOX_DB_PASSWORD",
        "database_prefix": "sitebox_",
        "install_roots": [],
        "start_grace_seconds": 3.0,
        "start_poll_interval_seconds": 0.25,
        "init_timeout_seconds": 120.0,
        "handshake_timeout_seconds": 5.0,
        "allow_protocol_substitution": True,
    },
    "swap": {
        "timeout_seconds": 60.0,
        "functional_check_path": "/",
        "functional_check_timeout_seconds": 5.0,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": str(LOG_DIR),
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "storage": {"allow_protocol_substitution": False},
        },
        "fast": {
            "supervisor": {
                "startup_timeout_seconds": 5.0,
                "readiness_poll_interval_seconds": 0.1,
                "stop_grace_seconds": 1.0,
            },
            "storage": {"start_grace_seconds": 1.0, "handshake_timeout_seconds": 2.0},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


# A field validator returns the parsed value, or ``None`` after recording an issue.
_FieldValidator = Callable[[object, str, _IssueCollector], object | None]


def default_config() -> SiteboxConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade sitebox.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the sitebox-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    overlay_raw = profiles_raw.get(selected) if isinstance(profiles_raw, Mapping) else None
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    return assert_valid_config(merge_config(materialized, overlay_raw), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles", {})
        if selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and ``config`` output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


# ----------------------------------------------------------------------
# Field validators
# ----------------------------------------------------------------------


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_optional_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    return value.strip()


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: SITEBOX_DB_PASSWORD)")
        return None
    return parsed


def _as_version(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _VERSION_PATTERN.fullmatch(parsed):
        issues.add(path, "must be a version like '8.2' or '8.2.10'")
        return None
    return parsed


def _as_url_path(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not parsed.startswith("/"):
        issues.add(path, "must start with '/'")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _int(minimum: int | None = None, maximum: int | None = None) -> _FieldValidator:
    def validate(value: object, path: str, issues: _IssueCollector) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if minimum is not None and value < minimum:
            issues.add(path, f"must be >= {minimum}")
            return None
        if maximum is not None and value > maximum:
            issues.add(path, f"must be <= {maximum}")
            return None
        return value

    return validate


def _positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if parsed <= 0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _enum(*allowed_values: str) -> _FieldValidator:
    def validate(value: object, path: str, issues: _IssueCollector) -> str | None:
        parsed = _as_str(value, path, issues)
        if parsed is None:
            return None
        if parsed not in allowed_values:
            expected = ", ".join(sorted(allowed_values))
            issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
            return None
        return parsed

    return validate


def _list_of(item_validator: _FieldValidator) -> _FieldValidator:
    def validate(value: object, path: str, issues: _IssueCollector) -> list[object] | None:
        if not isinstance(value, (list, tuple)):
            issues.add(path, f"expected array, got {type(value).__name__}")
            return None
        parsed: list[object] = []
        for index, item in enumerate(value):
            checked = item_validator(item, f"{path}[{index}]", issues)
            if checked is None:
                return None
            parsed.append(checked)
        return parsed

    return validate


def _version_binaries(value: object, path: str, issues: _IssueCollector) -> dict[str, str] | None:
    table = _as_object(value, path, issues)
    if table is None:
        return None
    out: dict[str, str] = {}
    for version in sorted(table):
        entry_path = _join(path, version)
        if not _VERSION_PATTERN.fullmatch(version):
            issues.add(entry_path, "key must be a runtime version like '8.2'")
            continue
        binary = _as_path_text(table[version], entry_path, issues)
        if binary is not None:
            out[version] = binary
    return out


_PORT = _int(minimum=1, maximum=65535)

_SECTION_FIELDS: Final[dict[str, dict[str, _FieldValidator]]] = {
    "meta": {"schema_version": _int(minimum=1)},
    "paths": {"state_dir": _as_path_text, "sites_root": _as_path_text},
    "ports": {
        "range_start": _PORT,
        "range_end": _PORT,
        "reserved": _list_of(_PORT),
        "probe_host": _as_str,
    },
    "runtime": {
        "default_version": _as_version,
        "binary": _as_path_text,
        "cgi_binary": _as_path_text,
        "binaries": _version_binaries,
    },
    "server": {
        "default_engine": _enum("builtin", "nginx", "apache"),
        "bind_host": _as_str,
        "document_root": _as_path_text,
        "nginx_binary": _as_path_text,
        "apache_binary": _as_path_text,
        "apache_runtime_module": _as_optional_text,
    },
    "supervisor": {
        "startup_timeout_seconds": _positive_float,
        "readiness_poll_attempts": _int(minimum=1),
        "readiness_poll_interval_seconds": _positive_float,
        "stop_grace_seconds": _positive_float,
        "health_interval_seconds": _positive_float,
        "health_failure_threshold": _int(minimum=1),
    },
    "storage": {
        "default_engine": _enum("sqlite", "mysql", "mariadb"),
        "host": _as_str,
        "user": _as_str,
        "password_env": _as_env_name,
        "database_prefix": _as_str,
        "install_roots": _list_of(_as_path_text),
        "start_grace_seconds": _positive_float,
        "start_poll_interval_seconds": _positive_float,
        "init_timeout_seconds": _positive_float,
        "handshake_timeout_seconds": _positive_float,
        "allow_protocol_substitution": _as_bool,
    },
    "swap": {
        "timeout_seconds": _positive_float,
        "functional_check_path": _as_url_path,
        "functional_check_timeout_seconds": _positive_float,
    },
    "observability": {
        "log_level": _enum("DEBUG", "INFO", "WARNING", "ERROR"),
        "log_format": _enum("json", "text"),
        "log_dir": _as_path_text,
        "redact_secrets": _as_bool,
    },
}


# ----------------------------------------------------------------------
# Section validation
# ----------------------------------------------------------------------


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {*_SECTION_FIELDS, "profiles"}, "", issues)
    _require_keys(payload, set(_SECTION_FIELDS), "", issues)

    out: dict[str, Any] = {}
    for section in sorted(_SECTION_FIELDS):
        raw = payload.get(section)
        if raw is None:
            continue
        section_obj = _as_object(raw, section, issues)
        if section_obj is None:
            continue
        out[section] = _validate_section(section, section_obj, section, issues, partial=False)

    meta = out.get("meta", {})
    version = meta.get("schema_version")
    if isinstance(version, int) and version != ConfigSchemaVersion:
        issues.add("meta.schema_version", migration_guidance(version))

    _validate_cross_fields(out, issues)

    raw_profiles = payload.get("profiles", {})
    profiles_obj = _as_object(raw_profiles, "profiles", issues)
    out["profiles"] = {} if profiles_obj is None else _validate_profiles(profiles_obj, issues)
    return out


def _validate_section(
    section: str,
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    fields = _SECTION_FIELDS[section]
    _reject_unknown_keys(payload, set(fields), path, issues)
    if not partial:
        _require_keys(payload, set(fields), path, issues)

    out: dict[str, Any] = {}
    for key in sorted(fields):
        if key not in payload:
            continue
        parsed = fields[key](payload[key], _join(path, key), issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    ports = config.get("ports", {})
    start, end = ports.get("range_start"), ports.get("range_end")
    if isinstance(start, int) and isinstance(end, int) and start > end:
        issues.add("ports.range_end", "must be >= ports.range_start")

    runtime = config.get("runtime", {})
    binaries = runtime.get("binaries")
    default_version = runtime.get("default_version")
    if binaries and isinstance(default_version, str) and default_version not in binaries:
        issues.add(
            "runtime.default_version",
            f"no entry for {default_version!r} in runtime.binaries",
        )


def _validate_profiles(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join("profiles", profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        allowed = set(_SECTION_FIELDS) - {"meta"}
        _reject_unknown_keys(profile_obj, allowed, profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in sorted(allowed & set(profile_obj)):
            section_path = _join(profile_path, section)
            section_obj = _as_object(profile_obj[section], section_path, issues)
            if section_obj is not None:
                overlay[section] = _validate_section(
                    section, section_obj, section_path, issues, partial=True
                )
        out[profile_name] = overlay
    return out


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "PATH_LIST_FIELDS",
    "SiteboxConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]

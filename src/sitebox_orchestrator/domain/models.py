"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, fields, is_dataclass, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import PurePath, PurePosixPath
from typing import Final, NoReturn, TypeVar, cast

from sitebox_orchestrator.constants import SANDBOX_RECORD_SCHEMA_VERSION
from sitebox_orchestrator.domain import ids as domain_ids
from sitebox_orchestrator.domain.errors import InvalidTransition, ValidationError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 4096
_MAX_DISPLAY_NAME = 64
_MAX_DOMAIN = 253

_DOMAIN_LABEL_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_RUNTIME_VERSION_RE: Final[re.Pattern[str]] = re.compile(r"^\d+\.\d+(?:\.\d+)?$")
_ENGINE_VERSION_RE: Final[re.Pattern[str]] = re.compile(r"^\d+\.\d+(?:\.\d+)?$")
_HOST_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9._:-]+$")


class SandboxStatus(StrEnum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class ServerEngine(StrEnum):
    BUILTIN = "builtin"
    NGINX = "nginx"
    APACHE = "apache"


class StorageBackend(StrEnum):
    EMBEDDED = "embedded"
    CLIENT_SERVER = "client_server"


class StorageEngineKind(StrEnum):
    SQLITE = "sqlite"
    MYSQL = "mysql"
    MARIADB = "mariadb"

    @property
    def backend(self) -> StorageBackend:
        if self is StorageEngineKind.SQLITE:
            return StorageBackend.EMBEDDED
        return StorageBackend.CLIENT_SERVER

    @property
    def protocol_family(self) -> str:
        """Engines in one family speak the same wire protocol."""
        if self is StorageEngineKind.SQLITE:
            return "sqlite"
        return "mysql"

    def family_members(self) -> tuple[StorageEngineKind, ...]:
        """This kind first, then every other kind of the same protocol family."""
        others = tuple(
            kind for kind in StorageEngineKind if kind is not self and kind.protocol_family == self.protocol_family
        )
        return (self, *others)


class ProbeFailureReason(StrEnum):
    NONE = "none"
    NOT_INSTALLED = "not_installed"
    NOT_RUNNING = "not_running"
    START_FAILED = "start_failed"
    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"


class SwapState(StrEnum):
    PREPARED = "prepared"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


ALLOWED_TRANSITIONS: Final[dict[SandboxStatus, frozenset[SandboxStatus]]] = {
    SandboxStatus.CREATED: frozenset({SandboxStatus.STARTING}),
    SandboxStatus.STARTING: frozenset(
        {SandboxStatus.RUNNING, SandboxStatus.FAILED, SandboxStatus.STOPPING, SandboxStatus.STOPPED}
    ),
    SandboxStatus.RUNNING: frozenset({SandboxStatus.STOPPING, SandboxStatus.FAILED}),
    SandboxStatus.STOPPING: frozenset({SandboxStatus.STOPPED, SandboxStatus.FAILED}),
    SandboxStatus.STOPPED: frozenset({SandboxStatus.STARTING}),
    SandboxStatus.FAILED: frozenset({SandboxStatus.STARTING, SandboxStatus.STOPPING, SandboxStatus.STOPPED}),
}

_SWAP_TRANSITIONS: Final[dict[SwapState, frozenset[SwapState]]] = {
    SwapState.PREPARED: frozenset({SwapState.APPLYING, SwapState.ROLLED_BACK}),
    SwapState.APPLYING: frozenset({SwapState.VERIFYING, SwapState.ROLLED_BACK}),
    SwapState.VERIFYING: frozenset({SwapState.COMMITTED, SwapState.ROLLED_BACK}),
    SwapState.COMMITTED: frozenset(),
    SwapState.ROLLED_BACK: frozenset(),
}

DELETABLE_STATUSES: Final[frozenset[SandboxStatus]] = frozenset(
    {SandboxStatus.CREATED, SandboxStatus.STOPPED, SandboxStatus.FAILED}
)
LEASE_HOLDING: Final[frozenset[SandboxStatus]] = frozenset(
    {SandboxStatus.CREATED, SandboxStatus.STARTING, SandboxStatus.RUNNING}
)


def ensure_transition(
    current: SandboxStatus, target: SandboxStatus, *, sandbox_id: str | None = None
) -> None:
    """Raise :class:`InvalidTransition` unless ``current -> target`` is a legal lifecycle move."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value, sandbox_id=sandbox_id)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self, *, indent: int | None = None) -> str:
        return _canonical_json(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


# ----------------------------------------------------------------------
# Server engine configuration: a closed tagged union keyed by ``engine``.
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BuiltinServerConfig(CanonicalModel):
    """The runtime's own development server (``php -S``)."""

    engine: ServerEngine = ServerEngine.BUILTIN
    document_root: str = "."
    router_script: str | None = None

    def __post_init__(self) -> None:
        _expect_engine(self.engine, ServerEngine.BUILTIN, "BuiltinServerConfig.engine")
        _as_relative_path(self.document_root, "BuiltinServerConfig.document_root")
        if self.router_script is not None:
            _as_relative_path(self.router_script, "BuiltinServerConfig.router_script")


@dataclass(frozen=True, slots=True)
class NginxServerConfig(CanonicalModel):
    """nginx in the foreground, fronting a FastCGI runtime on a unix socket."""

    engine: ServerEngine = ServerEngine.NGINX
    document_root: str = "."
    worker_connections: int = 64
    client_max_body_size_mb: int = 64
    fastcgi_children: int = 2

    def __post_init__(self) -> None:
        _expect_engine(self.engine, ServerEngine.NGINX, "NginxServerConfig.engine")
        _as_relative_path(self.document_root, "NginxServerConfig.document_root")
        _as_int(self.worker_connections, "NginxServerConfig.worker_connections", minimum=1)
        _as_int(self.client_max_body_size_mb, "NginxServerConfig.client_max_body_size_mb", minimum=1)
        _as_int(self.fastcgi_children, "NginxServerConfig.fastcgi_children", minimum=1)


@dataclass(frozen=True, slots=True)
class ApacheServerConfig(CanonicalModel):
    """A single foreground ``httpd -X`` with the runtime loaded as a module."""

    engine: ServerEngine = ServerEngine.APACHE
    document_root: str = "."
    allow_override: bool = True
    modules: tuple[str, ...] = ("rewrite",)

    def __post_init__(self) -> None:
        _expect_engine(self.engine, ServerEngine.APACHE, "ApacheServerConfig.engine")
        _as_relative_path(self.document_root, "ApacheServerConfig.document_root")
        _as_bool(self.allow_override, "ApacheServerConfig.allow_override")
        for index, module in enumerate(self.modules):
            _as_str(module, f"ApacheServerConfig.modules[{index}]", max_len=64)


ServerConfig = BuiltinServerConfig | NginxServerConfig | ApacheServerConfig

_SERVER_CONFIG_TYPES: Final[dict[ServerEngine, type[CanonicalModel]]] = {
    ServerEngine.BUILTIN: BuiltinServerConfig,
    ServerEngine.NGINX: NginxServerConfig,
    ServerEngine.APACHE: ApacheServerConfig,
}


def default_server_config(engine: ServerEngine | str, *, document_root: str = ".") -> ServerConfig:
    resolved = _as_enum(ServerEngine, engine, "server.engine")
    config_type = _SERVER_CONFIG_TYPES[resolved]
    return cast("ServerConfig", config_type(document_root=document_root))  # type: ignore[call-arg]


def parse_server_config(data: Mapping[str, object], path: str = "server") -> ServerConfig:
    """Build the engine-specific config selected by ``data["engine"]``."""
    if not isinstance(data, Mapping):
        _fail(path, f"expected object, got {type(data).__name__}")
    engine = _as_enum(ServerEngine, data.get("engine"), f"{path}.engine")
    config_type = _SERVER_CONFIG_TYPES[engine]
    allowed = {item.name for item in fields(config_type)}  # type: ignore[arg-type]
    parsed = _expect_object(data, path, required={"engine"}, optional=allowed - {"engine"})
    kwargs: dict[str, object] = {key: value for key, value in parsed.items() if key != "engine"}
    if "modules" in kwargs:
        kwargs["modules"] = tuple(_as_sequence(kwargs["modules"], f"{path}.modules"))
    try:
        return cast("ServerConfig", config_type(**kwargs))
    except TypeError as exc:
        _fail(path, str(exc))


# ----------------------------------------------------------------------
# Storage
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StorageEndpoint(CanonicalModel):
    """Where the application reaches its storage. Passwords are never persisted."""

    host: str
    port: int | None
    user: str | None
    database: str

    def __post_init__(self) -> None:
        _as_str(self.host, "StorageEndpoint.host", max_len=255)
        if self.port is not None:
            _as_port(self.port, "StorageEndpoint.port")
        if self.user is not None:
            _as_str(self.user, "StorageEndpoint.user", max_len=128)
        _as_str(self.database, "StorageEndpoint.database", max_len=1024)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StorageEndpoint:
        parsed = _expect_object(data, "StorageEndpoint", required={"host", "database"}, optional={"port", "user"})
        return cls(
            host=_as_str(parsed["host"], "StorageEndpoint.host"),
            port=None if parsed.get("port") is None else _as_int(parsed["port"], "StorageEndpoint.port"),
            user=_as_optional_str(parsed.get("user"), "StorageEndpoint.user"),
            database=_as_str(parsed["database"], "StorageEndpoint.database"),
        )


@dataclass(frozen=True, slots=True)
class StorageProbeResult(CanonicalModel):
    engine_kind: StorageEngineKind
    reachable: bool
    verified_at: datetime
    failure_reason: ProbeFailureReason = ProbeFailureReason.NONE
    version: str | None = None
    detail: str | None = None
    endpoint: StorageEndpoint | None = None

    def __post_init__(self) -> None:
        _as_enum(StorageEngineKind, self.engine_kind, "StorageProbeResult.engine_kind")
        _as_bool(self.reachable, "StorageProbeResult.reachable")
        _as_datetime(self.verified_at, "StorageProbeResult.verified_at")
        reason = _as_enum(ProbeFailureReason, self.failure_reason, "StorageProbeResult.failure_reason")
        if self.reachable and reason is not ProbeFailureReason.NONE:
            _fail("StorageProbeResult.failure_reason", "reachable probe must not carry a failure reason")
        if not self.reachable and reason is ProbeFailureReason.NONE:
            _fail("StorageProbeResult.failure_reason", "unreachable probe must name a failure reason")
        if self.version is not None and _ENGINE_VERSION_RE.fullmatch(self.version) is None:
            _fail("StorageProbeResult.version", f"invalid engine version {self.version!r}")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StorageProbeResult:
        parsed = _expect_object(
            data,
            "StorageProbeResult",
            required={"engine_kind", "reachable", "verified_at"},
            optional={"failure_reason", "version", "detail", "endpoint"},
        )
        endpoint_raw = parsed.get("endpoint")
        return cls(
            engine_kind=_as_enum(StorageEngineKind, parsed["engine_kind"], "StorageProbeResult.engine_kind"),
            reachable=_as_bool(parsed["reachable"], "StorageProbeResult.reachable"),
            verified_at=_as_datetime(parsed["verified_at"], "StorageProbeResult.verified_at"),
            failure_reason=_as_enum(
                ProbeFailureReason,
                parsed.get("failure_reason", ProbeFailureReason.NONE.value),
                "StorageProbeResult.failure_reason",
            ),
            version=_as_optional_str(parsed.get("version"), "StorageProbeResult.version"),
            detail=_as_optional_str(parsed.get("detail"), "StorageProbeResult.detail"),
            endpoint=None
            if endpoint_raw is None
            else StorageEndpoint.from_dict(_expect_mapping(endpoint_raw, "StorageProbeResult.endpoint")),
        )


# ----------------------------------------------------------------------
# Sandbox records
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SandboxRuntimeConfig(CanonicalModel):
    """The swappable part of a sandbox: server engine, runtime version and storage."""

    server: ServerConfig
    runtime_version: str
    storage_engine_kind: StorageEngineKind
    storage_version: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.server, (BuiltinServerConfig, NginxServerConfig, ApacheServerConfig)):
            _fail("SandboxRuntimeConfig.server", f"unsupported server config {type(self.server).__name__}")
        validate_runtime_version(self.runtime_version, "SandboxRuntimeConfig.runtime_version")
        _as_enum(StorageEngineKind, self.storage_engine_kind, "SandboxRuntimeConfig.storage_engine_kind")

    @property
    def storage_backend(self) -> StorageBackend:
        return self.storage_engine_kind.backend

    def fingerprint(self) -> str:
        """Stable digest used to compare on-disk and live configuration."""
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class Sandbox(CanonicalModel):
    id: str
    display_name: str
    domain: str
    root_path: str
    port: int
    runtime_version: str
    server: ServerConfig
    storage_backend: StorageBackend
    storage_engine_kind: StorageEngineKind
    status: SandboxStatus
    created_at: datetime
    last_transition_at: datetime
    config_written_at: datetime
    storage_version: str | None = None
    storage_endpoint: StorageEndpoint | None = None
    storage_probe: StorageProbeResult | None = None
    last_error: str | None = None
    schema_version: int = SANDBOX_RECORD_SCHEMA_VERSION

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_sandbox_id(self.id)
        except ValueError as exc:
            _fail("Sandbox.id", str(exc))
        validate_display_name(self.display_name, "Sandbox.display_name")
        if normalize_domain(self.domain, "Sandbox.domain") != self.domain:
            _fail("Sandbox.domain", "domain must be stored in normalized lowercase form")
        if not PurePath(self.root_path).is_absolute():
            _fail("Sandbox.root_path", "must be an absolute path")
        _as_port(self.port, "Sandbox.port")
        validate_runtime_version(self.runtime_version, "Sandbox.runtime_version")
        _as_enum(SandboxStatus, self.status, "Sandbox.status")
        for name in ("created_at", "last_transition_at", "config_written_at"):
            _as_datetime(getattr(self, name), f"Sandbox.{name}")
        _as_int(self.schema_version, "Sandbox.schema_version", minimum=1)
        self._check_storage()

    def _check_storage(self) -> None:
        kind = _as_enum(StorageEngineKind, self.storage_engine_kind, "Sandbox.storage_engine_kind")
        backend = _as_enum(StorageBackend, self.storage_backend, "Sandbox.storage_backend")
        if kind.backend is not backend:
            _fail("Sandbox.storage_engine_kind", f"{kind.value!r} is not a {backend.value} engine")
        if backend is StorageBackend.EMBEDDED:
            return
        # Client-server storage is only ever persisted after a successful probe.
        probe = self.storage_probe
        if probe is None or not probe.reachable:
            _fail("Sandbox.storage_probe", "client_server storage requires a reachable probe")
        if probe.engine_kind is not kind:
            _fail("Sandbox.storage_probe", "probe engine does not match storage_engine_kind")
        if probe.verified_at > self.config_written_at:
            _fail("Sandbox.storage_probe", "probe must be verified before the configuration is written")
        if self.storage_endpoint is None:
            _fail("Sandbox.storage_endpoint", "client_server storage requires an endpoint")

    @property
    def server_engine(self) -> ServerEngine:
        return self.server.engine

    @property
    def holds_port_lease(self) -> bool:
        return self.status in LEASE_HOLDING

    def runtime_config(self) -> SandboxRuntimeConfig:
        return SandboxRuntimeConfig(
            server=self.server,
            runtime_version=self.runtime_version,
            storage_engine_kind=self.storage_engine_kind,
            storage_version=self.storage_version,
        )

    def with_status(
        self,
        status: SandboxStatus,
        *,
        at: datetime | None = None,
        last_error: str | None = None,
    ) -> Sandbox:
        """Return a copy in ``status``; ``last_error`` is cleared unless given."""
        ensure_transition(self.status, status, sandbox_id=self.id)
        return replace(self, status=status, last_transition_at=at or utc_now(), last_error=last_error)

    def with_runtime_config(
        self,
        config: SandboxRuntimeConfig,
        *,
        endpoint: StorageEndpoint | None,
        probe: StorageProbeResult | None,
        written_at: datetime | None = None,
    ) -> Sandbox:
        return replace(
            self,
            server=config.server,
            runtime_version=config.runtime_version,
            storage_backend=config.storage_backend,
            storage_engine_kind=config.storage_engine_kind,
            storage_version=config.storage_version,
            storage_endpoint=endpoint,
            storage_probe=probe,
            config_written_at=written_at or utc_now(),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Sandbox:
        parsed = _expect_object(
            data,
            "Sandbox",
            required={
                "id",
                "display_name",
                "domain",
                "root_path",
                "port",
                "runtime_version",
                "server",
                "storage_backend",
                "storage_engine_kind",
                "status",
                "created_at",
                "last_transition_at",
                "config_written_at",
            },
            optional={"storage_version", "storage_endpoint", "storage_probe", "last_error", "schema_version"},
        )
        endpoint_raw = parsed.get("storage_endpoint")
        probe_raw = parsed.get("storage_probe")
        schema_version = _as_int(parsed.get("schema_version", SANDBOX_RECORD_SCHEMA_VERSION), "Sandbox.schema_version")
        if schema_version > SANDBOX_RECORD_SCHEMA_VERSION:
            _fail("Sandbox.schema_version", f"unsupported record schema version {schema_version}")
        return cls(
            id=_as_str(parsed["id"], "Sandbox.id"),
            display_name=_as_str(parsed["display_name"], "Sandbox.display_name", strip=False),
            domain=_as_str(parsed["domain"], "Sandbox.domain", strip=False),
            root_path=_as_str(parsed["root_path"], "Sandbox.root_path", strip=False),
            port=_as_int(parsed["port"], "Sandbox.port"),
            runtime_version=_as_str(parsed["runtime_version"], "Sandbox.runtime_version"),
            server=parse_server_config(_expect_mapping(parsed["server"], "Sandbox.server"), "Sandbox.server"),
            storage_backend=_as_enum(StorageBackend, parsed["storage_backend"], "Sandbox.storage_backend"),
            storage_engine_kind=_as_enum(
                StorageEngineKind, parsed["storage_engine_kind"], "Sandbox.storage_engine_kind"
            ),
            status=_as_enum(SandboxStatus, parsed["status"], "Sandbox.status"),
            created_at=_as_datetime(parsed["created_at"], "Sandbox.created_at"),
            last_transition_at=_as_datetime(parsed["last_transition_at"], "Sandbox.last_transition_at"),
            config_written_at=_as_datetime(parsed["config_written_at"], "Sandbox.config_written_at"),
            storage_version=_as_optional_str(parsed.get("storage_version"), "Sandbox.storage_version"),
            storage_endpoint=None
            if endpoint_raw is None
            else StorageEndpoint.from_dict(_expect_mapping(endpoint_raw, "Sandbox.storage_endpoint")),
            storage_probe=None
            if probe_raw is None
            else StorageProbeResult.from_dict(_expect_mapping(probe_raw, "Sandbox.storage_probe")),
            last_error=_as_optional_str(parsed.get("last_error"), "Sandbox.last_error"),
            schema_version=schema_version,
        )


@dataclass(frozen=True, slots=True)
class PortLease:
    port: int
    owner_sandbox_id: str
    leased_at: datetime


@dataclass(frozen=True, slots=True)
class SandboxSpec:
    """A create request. Name and domain are validated and normalized on construction."""

    display_name: str
    domain: str
    runtime_version: str
    server: ServerConfig
    storage_engine_kind: StorageEngineKind = StorageEngineKind.SQLITE
    root_path: str | None = None
    start: bool = False

    def __post_init__(self) -> None:
        validate_display_name(self.display_name, "SandboxSpec.display_name")
        object.__setattr__(self, "display_name", self.display_name.strip())
        object.__setattr__(self, "domain", normalize_domain(self.domain, "SandboxSpec.domain"))
        validate_runtime_version(self.runtime_version, "SandboxSpec.runtime_version")
        if not isinstance(self.server, (BuiltinServerConfig, NginxServerConfig, ApacheServerConfig)):
            _fail("SandboxSpec.server", f"unsupported server config {type(self.server).__name__}")
        object.__setattr__(
            self,
            "storage_engine_kind",
            _as_enum(StorageEngineKind, self.storage_engine_kind, "SandboxSpec.storage_engine_kind"),
        )
        _as_bool(self.start, "SandboxSpec.start")

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, defaults: Mapping[str, object] | None = None) -> SandboxSpec:
        """Parse a create request document; ``defaults`` fill fields the document omits."""
        merged: dict[str, object] = dict(defaults or {})
        merged.update(data)
        parsed = _expect_object(
            merged,
            "SandboxSpec",
            required={"display_name", "domain", "runtime_version"},
            optional={"server", "storage_engine_kind", "root_path", "start"},
        )
        server_raw = parsed.get("server", {"engine": ServerEngine.BUILTIN.value})
        if isinstance(server_raw, str):
            server_raw = {"engine": server_raw}
        return cls(
            display_name=_as_str(parsed["display_name"], "SandboxSpec.display_name"),
            domain=_as_str(parsed["domain"], "SandboxSpec.domain"),
            runtime_version=str(parsed["runtime_version"]),
            server=parse_server_config(_expect_mapping(server_raw, "SandboxSpec.server"), "SandboxSpec.server"),
            storage_engine_kind=_as_enum(
                StorageEngineKind,
                parsed.get("storage_engine_kind", StorageEngineKind.SQLITE.value),
                "SandboxSpec.storage_engine_kind",
            ),
            root_path=_as_optional_str(parsed.get("root_path"), "SandboxSpec.root_path"),
            start=_as_bool(parsed.get("start", False), "SandboxSpec.start"),
        )


@dataclass(frozen=True, slots=True)
class SwapRequest:
    """Target for a hot swap; unset fields keep their current value."""

    server: ServerConfig | None = None
    runtime_version: str | None = None
    storage_engine_kind: StorageEngineKind | None = None

    def __post_init__(self) -> None:
        if self.server is None and self.runtime_version is None and self.storage_engine_kind is None:
            _fail("SwapRequest", "at least one of server, runtime_version, storage_engine_kind is required")
        if self.runtime_version is not None:
            validate_runtime_version(self.runtime_version, "SwapRequest.runtime_version")
        if self.storage_engine_kind is not None:
            object.__setattr__(
                self,
                "storage_engine_kind",
                _as_enum(StorageEngineKind, self.storage_engine_kind, "SwapRequest.storage_engine_kind"),
            )

    def apply_to(self, current: SandboxRuntimeConfig) -> SandboxRuntimeConfig:
        kind = self.storage_engine_kind or current.storage_engine_kind
        return SandboxRuntimeConfig(
            server=self.server or current.server,
            runtime_version=self.runtime_version or current.runtime_version,
            storage_engine_kind=kind,
            storage_version=current.storage_version if kind is current.storage_engine_kind else None,
        )


@dataclass(frozen=True, slots=True)
class SwapPlan:
    sandbox_id: str
    from_config: SandboxRuntimeConfig
    to_config: SandboxRuntimeConfig
    backup_token: str
    was_running: bool
    state: SwapState = SwapState.PREPARED

    def advance(self, state: SwapState) -> SwapPlan:
        if state not in _SWAP_TRANSITIONS[self.state]:
            raise InvalidTransition(self.state.value, state.value, sandbox_id=self.sandbox_id)
        return replace(self, state=state)

    @property
    def storage_changed(self) -> bool:
        return self.from_config.storage_engine_kind is not self.to_config.storage_engine_kind


# ----------------------------------------------------------------------
# Public validators
# ----------------------------------------------------------------------


def normalize_domain(value: object, path: str = "domain") -> str:
    """Lowercase and validate a hostname such as ``blog.local``."""
    text = _as_str(value, path, max_len=_MAX_DOMAIN).lower().rstrip(".")
    labels = text.split(".")
    for label in labels:
        if _DOMAIN_LABEL_RE.fullmatch(label) is None:
            _fail(path, f"invalid domain label {label!r} in {text!r}")
    if labels[-1].isdigit():
        _fail(path, "top-level label must not be numeric")
    return text


def validate_display_name(value: object, path: str = "display_name") -> str:
    text = _as_str(value, path, max_len=_MAX_DISPLAY_NAME)
    if any(not char.isprintable() for char in text):
        _fail(path, "must contain printable characters only")
    if "/" in text or "\\" in text:
        _fail(path, "must not contain path separators")
    return text


def validate_runtime_version(value: object, path: str = "runtime_version") -> str:
    text = _as_str(value, path, max_len=32)
    if _RUNTIME_VERSION_RE.fullmatch(text) is None:
        _fail(path, f"expected a version like '8.2' or '8.2.10', got {text!r}")
    return text


# ------------------------
# Internal helper routines
# ------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValidationError(f"{path}: {message}")


def _canonical_json(value: JSONValue, *, indent: int | None = None) -> str:
    if indent is None:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(value, sort_keys=True, indent=indent, ensure_ascii=False)


def _expect_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    mapping = _expect_mapping(value, path)
    parsed: dict[str, object] = {}
    for key, item in mapping.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _expect_engine(value: object, expected: ServerEngine, path: str) -> None:
    if _as_enum(ServerEngine, value, path) is not expected:
        _fail(path, f"expected {expected.value!r}, got {value!r}")


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_port(value: object, path: str) -> int:
    port = _as_int(value, path, minimum=1)
    if port > 65535:
        _fail(path, "must be <= 65535")
    return port


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_relative_path(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=1024)
    if "\x00" in parsed:
        _fail(path, "must not contain NUL bytes")
    candidate = PurePosixPath(parsed)
    if candidate.is_absolute() or ".." in candidate.parts:
        _fail(path, "must be a relative path inside the sandbox root")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DELETABLE_STATUSES",
    "LEASE_HOLDING",
    "ApacheServerConfig",
    "BuiltinServerConfig",
    "CanonicalModel",
    "JSONValue",
    "NginxServerConfig",
    "PortLease",
    "ProbeFailureReason",
    "Sandbox",
    "SandboxRuntimeConfig",
    "SandboxSpec",
    "SandboxStatus",
    "ServerConfig",
    "ServerEngine",
    "StorageBackend",
    "StorageEndpoint",
    "StorageEngineKind",
    "StorageProbeResult",
    "SwapPlan",
    "SwapRequest",
    "SwapState",
    "default_server_config",
    "ensure_transition",
    "normalize_domain",
    "parse_server_config",
    "utc_now",
    "validate_display_name",
    "validate_runtime_version",
]

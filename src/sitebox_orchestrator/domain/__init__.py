"""Domain model exports: sandbox records, engine configs, swap plans and the error taxonomy."""

from sitebox_orchestrator.domain.errors import (
    BackendUnavailable,
    DuplicateDomain,
    InvalidTransition,
    PortExhausted,
    ProcessCrashed,
    ProcessStartTimeout,
    RegistryCorruption,
    SandboxNotFound,
    SiteboxError,
    SupervisorBusy,
    SwapFailed,
    SwapRollbackFailed,
    ValidationError,
)
from sitebox_orchestrator.domain.models import (
    ApacheServerConfig,
    BuiltinServerConfig,
    NginxServerConfig,
    PortLease,
    ProbeFailureReason,
    Sandbox,
    SandboxRuntimeConfig,
    SandboxSpec,
    SandboxStatus,
    ServerConfig,
    ServerEngine,
    StorageBackend,
    StorageEndpoint,
    StorageEngineKind,
    StorageProbeResult,
    SwapPlan,
    SwapRequest,
    SwapState,
)

__all__ = [
    "ApacheServerConfig",
    "BackendUnavailable",
    "BuiltinServerConfig",
    "DuplicateDomain",
    "InvalidTransition",
    "NginxServerConfig",
    "PortExhausted",
    "PortLease",
    "ProbeFailureReason",
    "ProcessCrashed",
    "ProcessStartTimeout",
    "RegistryCorruption",
    "Sandbox",
    "SandboxNotFound",
    "SandboxRuntimeConfig",
    "SandboxSpec",
    "SandboxStatus",
    "ServerConfig",
    "ServerEngine",
    "SiteboxError",
    "StorageBackend",
    "StorageEndpoint",
    "StorageEngineKind",
    "StorageProbeResult",
    "SupervisorBusy",
    "SwapFailed",
    "SwapPlan",
    "SwapRequest",
    "SwapRollbackFailed",
    "SwapState",
    "ValidationError",
]

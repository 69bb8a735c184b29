"""Sandbox runtime: port leasing, storage verification, process supervision and engine swaps."""

from sitebox_orchestrator.sandbox.collaborators import (
    ContentProvisioner,
    DatabaseEngineRegistrar,
    DocumentRootProvisioner,
    DomainRegistrar,
    EngineInstallation,
    EngineStartError,
    LocalDatabaseEngineRegistrar,
    MappingFileDomainRegistrar,
)
from sitebox_orchestrator.sandbox.engine_swap import (
    EngineSwapCoordinator,
    FunctionalCheckError,
    HttpFunctionalCheck,
    SwapOutcome,
)
from sitebox_orchestrator.sandbox.launch import LaunchPlan, ProcessSpec, RuntimeBinaries, build_launch_plan
from sitebox_orchestrator.sandbox.port_allocator import PortAllocator, bind_probe, is_port_listening
from sitebox_orchestrator.sandbox.process_supervisor import ProcessHandle, ProcessSupervisor, SupervisorFailure
from sitebox_orchestrator.sandbox.storage_verifier import (
    StorageBackendVerifier,
    StorageCredentials,
    pymysql_handshake,
    tcp_reachable,
)

__all__ = [
    "ContentProvisioner",
    "DatabaseEngineRegistrar",
    "DocumentRootProvisioner",
    "DomainRegistrar",
    "EngineInstallation",
    "EngineStartError",
    "EngineSwapCoordinator",
    "FunctionalCheckError",
    "HttpFunctionalCheck",
    "LaunchPlan",
    "LocalDatabaseEngineRegistrar",
    "MappingFileDomainRegistrar",
    "PortAllocator",
    "ProcessHandle",
    "ProcessSpec",
    "ProcessSupervisor",
    "RuntimeBinaries",
    "StorageBackendVerifier",
    "StorageCredentials",
    "SupervisorFailure",
    "SwapOutcome",
    "bind_probe",
    "build_launch_plan",
    "is_port_listening",
    "pymysql_handshake",
    "tcp_reachable",
]

"""
sitebox-orchestrator — orchestration façade.

File: src/sitebox_orchestrator/control_plane/orchestrator.py

Purpose
- Compose registry, port allocator, storage verifier, process supervisor and swap
  coordinator into create/start/stop/delete/swap operations.

Functional requirements
- At most one operation per sandbox is in flight; different sandboxes proceed in parallel.
- Create persists the storage backend actually obtained: an unusable client-server backend
  downgrades to embedded storage and is logged, never raised.
- Create failure or cancellation releases the port and removes partial registry state.
- Delete routes through stop, releases the port, removes the record and revokes the domain.
- ``open`` owns the state directory and reconciles records left mid-lifecycle by a previous
  supervisor; ``close`` stops supervised sandboxes and releases ownership.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from sitebox_orchestrator.config.loader import resolve_storage_password
from sitebox_orchestrator.constants import HOST_LOCK_FILENAME
from sitebox_orchestrator.control_plane.host_lock import HostLock
from sitebox_orchestrator.domain import ids as domain_ids
from sitebox_orchestrator.domain.errors import DuplicateDomain, RegistryCorruption
from sitebox_orchestrator.domain.models import (
    DELETABLE_STATUSES,
    Sandbox,
    SandboxSpec,
    SandboxStatus,
    StorageBackend,
    StorageEngineKind,
    SwapRequest,
    utc_now,
)
from sitebox_orchestrator.observability.logging import correlation_scope
from sitebox_orchestrator.persistence.site_registry import RegistryListing, SiteRegistry
from sitebox_orchestrator.sandbox.collaborators import (
    ContentProvisioner,
    DocumentRootProvisioner,
    DomainRegistrar,
    LocalDatabaseEngineRegistrar,
    MappingFileDomainRegistrar,
)
from sitebox_orchestrator.sandbox.engine_swap import EngineSwapCoordinator, HttpFunctionalCheck, SwapOutcome
from sitebox_orchestrator.sandbox.launch import RuntimeBinaries
from sitebox_orchestrator.sandbox.port_allocator import PortAllocator
from sitebox_orchestrator.sandbox.process_supervisor import ProcessSupervisor, SupervisorFailure
from sitebox_orchestrator.sandbox.storage_verifier import StorageBackendVerifier, StorageCredentials
from sitebox_orchestrator.utils.concurrency import CancellationToken, KeyedLock

_UNSAFE_DB_CHARS = re.compile(r"[^A-Za-z0-9_]")
_RECONCILE_STATUSES = frozenset({SandboxStatus.STARTING, SandboxStatus.RUNNING, SandboxStatus.STOPPING})


@dataclass(frozen=True, slots=True)
class StorageSettings:
    user: str = "root"
    password: str | None = None
    database_prefix: str = "sitebox_"

    def credentials_for(self, sandbox_id: str) -> StorageCredentials:
        prefix = _UNSAFE_DB_CHARS.sub("_", self.database_prefix)
        return StorageCredentials(
            user=self.user,
            password=self.password,
            database=f"{prefix}{domain_ids.short_id(sandbox_id).lower()}",
        )


@dataclass(frozen=True, slots=True)
class OpenReport:
    reconciled: tuple[str, ...]
    lease_conflicts: tuple[str, ...]
    issues: tuple[RegistryCorruption, ...]


class Orchestrator:
    def __init__(
        self,
        *,
        registry: SiteRegistry,
        allocator: PortAllocator,
        verifier: StorageBackendVerifier,
        supervisor: ProcessSupervisor,
        swapper: EngineSwapCoordinator,
        content: ContentProvisioner,
        domains: DomainRegistrar,
        sites_root: str | Path,
        storage: StorageSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._registry = registry
        self._allocator = allocator
        self._verifier = verifier
        self._supervisor = supervisor
        self._swapper = swapper
        self._content = content
        self._domains = domains
        self._sites_root = Path(sites_root)
        self._storage = storage or StorageSettings()
        self._locks = KeyedLock()
        self._host_lock = HostLock(registry.state_dir / HOST_LOCK_FILENAME)
        self._opened = False
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> Orchestrator:
        """Wire the default collaborators from a loaded configuration."""
        paths = config["paths"]
        ports = config["ports"]
        server = config["server"]
        supervisor_cfg = config["supervisor"]
        storage_cfg = config["storage"]
        swap_cfg = config["swap"]

        state_dir = Path(paths["state_dir"])
        password = resolve_storage_password(config, environ) or None
        storage = StorageSettings(
            user=storage_cfg["user"],
            password=password,
            database_prefix=storage_cfg["database_prefix"],
        )
        registry = SiteRegistry(state_dir)
        allocator = PortAllocator(
            range_start=ports["range_start"],
            range_end=ports["range_end"],
            reserved=ports["reserved"],
            probe_host=ports["probe_host"],
        )
        verifier = StorageBackendVerifier(
            LocalDatabaseEngineRegistrar(
                install_roots=storage_cfg["install_roots"],
                data_root=state_dir / "engines",
                bind_host=storage_cfg["host"],
            ),
            host=storage_cfg["host"],
            handshake_timeout_seconds=storage_cfg["handshake_timeout_seconds"],
            start_grace_seconds=storage_cfg["start_grace_seconds"],
            start_poll_interval_seconds=storage_cfg["start_poll_interval_seconds"],
            init_timeout_seconds=storage_cfg["init_timeout_seconds"],
            allow_protocol_substitution=storage_cfg["allow_protocol_substitution"],
        )
        supervisor = ProcessSupervisor(
            registry,
            allocator,
            binaries=RuntimeBinaries.from_config(config),
            bind_host=server["bind_host"],
            storage_password=password,
            startup_timeout_seconds=supervisor_cfg["startup_timeout_seconds"],
            readiness_poll_attempts=supervisor_cfg["readiness_poll_attempts"],
            readiness_poll_interval_seconds=supervisor_cfg["readiness_poll_interval_seconds"],
            stop_grace_seconds=supervisor_cfg["stop_grace_seconds"],
            health_interval_seconds=supervisor_cfg["health_interval_seconds"],
            health_failure_threshold=supervisor_cfg["health_failure_threshold"],
        )
        swapper = EngineSwapCoordinator(
            registry,
            supervisor,
            verifier,
            timeout_seconds=swap_cfg["timeout_seconds"],
            functional_check=HttpFunctionalCheck(
                host=server["bind_host"],
                path=swap_cfg["functional_check_path"],
                timeout_seconds=swap_cfg["functional_check_timeout_seconds"],
            ),
            credentials_for=lambda sandbox: storage.credentials_for(sandbox.id),
        )
        return cls(
            registry=registry,
            allocator=allocator,
            verifier=verifier,
            supervisor=supervisor,
            swapper=swapper,
            content=DocumentRootProvisioner(),
            domains=MappingFileDomainRegistrar(state_dir, host=server["bind_host"]),
            sites_root=paths["sites_root"],
            storage=storage,
            logger=logger,
        )

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def registry(self) -> SiteRegistry:
        return self._registry

    @property
    def allocator(self) -> PortAllocator:
        return self._allocator

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    # ------------------------------------------------------------------
    # Lifecycle of the orchestrator itself
    # ------------------------------------------------------------------

    async def open(self) -> OpenReport:
        """Take ownership of the state directory and bring persisted records in line with reality."""
        self._host_lock.acquire()
        # Only safe under the lock: another owner could still be writing these files.
        self._registry.sweep_temp_files()
        listing = self._registry.list()
        reconciled: list[str] = []
        for record in listing.sandboxes:
            if record.status not in _RECONCILE_STATUSES or self._supervisor.is_running(record.id):
                continue
            self._registry.update(record.id, _settle_orphan)
            reconciled.append(record.id)
            self._logger.warning("sandbox_reconciled", sandbox_id=record.id, previous_status=record.status.value)

        settled = self._registry.list()
        conflicts = self._allocator.rehydrate(settled.sandboxes)
        for issue in settled.issues:
            self._logger.warning("registry_record_skipped", sandbox_id=issue.sandbox_id, detail=issue.message)
        self._opened = True
        self._logger.info(
            "orchestrator_opened",
            state_dir=str(self._registry.state_dir),
            sandboxes=len(settled.sandboxes),
            reconciled=len(reconciled),
            corrupt=len(settled.issues),
        )
        return OpenReport(
            reconciled=tuple(reconciled),
            lease_conflicts=tuple(record.id for record in conflicts),
            issues=settled.issues,
        )

    async def close(self) -> None:
        try:
            stopped = await self._supervisor.stop_all()
            if stopped:
                self._logger.info("orchestrator_stopped_sandboxes", sandbox_ids=list(stopped))
        finally:
            self._host_lock.release()
            self._opened = False

    async def __aenter__(self) -> Orchestrator:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, sandbox_id: str) -> Sandbox:
        return self._registry.get(sandbox_id)

    def list(self) -> RegistryListing:
        return self._registry.list()

    async def next_failure(self) -> SupervisorFailure:
        return await self._supervisor.next_failure()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, spec: SandboxSpec, *, cancel_token: CancellationToken | None = None) -> Sandbox:
        sandbox_id = domain_ids.generate_sandbox_id()
        with correlation_scope(sandbox_id=sandbox_id):
            async with self._locks.hold(sandbox_id):
                record = await self._create_locked(sandbox_id, spec)
            if spec.start:
                return await self.start(sandbox_id, cancel_token=cancel_token)
            return record

    async def _create_locked(self, sandbox_id: str, spec: SandboxSpec) -> Sandbox:
        existing = self._registry.find_by_domain(spec.domain)
        if existing is not None:
            raise DuplicateDomain(spec.domain, owner_id=existing.id)

        lease = self._allocator.lease(sandbox_id)
        registered = False
        try:
            kind = spec.storage_engine_kind
            probe = None
            if kind.backend is StorageBackend.CLIENT_SERVER:
                probe = await self._verifier.verify(kind, self._storage.credentials_for(sandbox_id))
                if probe.reachable:
                    kind = probe.engine_kind
                else:
                    self._logger.warning(
                        "storage_backend_downgraded",
                        sandbox_id=sandbox_id,
                        requested=spec.storage_engine_kind.value,
                        reason=probe.failure_reason.value,
                        detail=probe.detail,
                    )
                    kind = StorageEngineKind.SQLITE
                    probe = None

            root_path = Path(spec.root_path) if spec.root_path else self._sites_root / spec.domain
            root_path = root_path.expanduser().resolve()
            await self._content.provision_content(
                root_path, spec.runtime_version, document_root=spec.server.document_root
            )

            now = utc_now()
            record = Sandbox(
                id=sandbox_id,
                display_name=spec.display_name,
                domain=spec.domain,
                root_path=str(root_path),
                port=lease.port,
                runtime_version=spec.runtime_version,
                server=spec.server,
                storage_backend=kind.backend,
                storage_engine_kind=kind,
                status=SandboxStatus.CREATED,
                created_at=now,
                last_transition_at=now,
                config_written_at=now,
                storage_version=None if probe is None else probe.version,
                storage_endpoint=None if probe is None else probe.endpoint,
                storage_probe=probe,
            )
            self._registry.create(record)
            registered = True
            await self._domains.register_domain(record.domain, record.port)
        except (Exception, asyncio.CancelledError):
            self._allocator.release_owner(sandbox_id)
            if registered:
                self._registry.delete(sandbox_id)
            self._logger.warning("sandbox_create_aborted", sandbox_id=sandbox_id, domain=spec.domain)
            raise

        self._logger.info(
            "sandbox_created",
            sandbox_id=sandbox_id,
            domain=record.domain,
            port=record.port,
            storage_backend=record.storage_backend.value,
            storage_engine_kind=record.storage_engine_kind.value,
        )
        return record

    async def start(self, sandbox_id: str, *, cancel_token: CancellationToken | None = None) -> Sandbox:
        with correlation_scope(sandbox_id=sandbox_id):
            async with self._locks.hold(sandbox_id):
                return await self._supervisor.start(sandbox_id, cancel_token=cancel_token)

    async def stop(self, sandbox_id: str) -> Sandbox:
        with correlation_scope(sandbox_id=sandbox_id):
            async with self._locks.hold(sandbox_id):
                return await self._supervisor.stop(sandbox_id)

    async def delete(self, sandbox_id: str) -> Sandbox:
        with correlation_scope(sandbox_id=sandbox_id):
            async with self._locks.hold(sandbox_id):
                record = self._registry.get(sandbox_id)
                if record.status not in DELETABLE_STATUSES or self._supervisor.is_running(sandbox_id):
                    record = await self._supervisor.stop(sandbox_id)
                self._supervisor.release_lease(sandbox_id)
                self._registry.delete(sandbox_id)
                await self._domains.unregister_domain(record.domain)
                self._logger.info("sandbox_deleted", sandbox_id=sandbox_id, domain=record.domain)
                return record

    async def swap(
        self,
        sandbox_id: str,
        request: SwapRequest,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SwapOutcome:
        with correlation_scope(sandbox_id=sandbox_id):
            async with self._locks.hold(sandbox_id):
                return await self._swapper.swap(sandbox_id, request, cancel_token=cancel_token)

    def cleanup(self) -> list[RegistryCorruption]:
        """Quarantine corrupt records so they stop showing up as issues."""
        return self._registry.quarantine_corrupt()


def _settle_orphan(record: Sandbox) -> Sandbox:
    # No process from a previous supervisor survives in this one's handle table.
    if record.status is SandboxStatus.RUNNING:
        record = record.with_status(SandboxStatus.STOPPING)
    return record.with_status(SandboxStatus.STOPPED, last_error=record.last_error)


__all__ = ["OpenReport", "Orchestrator", "StorageSettings"]

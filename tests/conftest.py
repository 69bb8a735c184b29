"""Shared builders and fakes for sitebox-orchestrator tests."""

from __future__ import annotations

import asyncio
import os
import re
import sys
from collections.abc import Callable, Collection
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from sitebox_orchestrator.domain import ids
from sitebox_orchestrator.domain.models import (
    BuiltinServerConfig,
    Sandbox,
    SandboxStatus,
    StorageBackend,
    StorageEngineKind,
)
from sitebox_orchestrator.persistence.site_registry import SiteRegistry
from sitebox_orchestrator.sandbox.collaborators import EngineInstallation, EngineStartError
from sitebox_orchestrator.sandbox.launch import LaunchPlan, ProcessSpec
from sitebox_orchestrator.sandbox.port_allocator import PortAllocator
from sitebox_orchestrator.sandbox.process_supervisor import ProcessSupervisor
from sitebox_orchestrator.sandbox.storage_verifier import StorageCredentials

FIXED_TIME = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)
HTTP_READY_MARKER = re.compile(r"Serving HTTP on")


def build_sandbox(root: Path, **overrides: Any) -> Sandbox:
    record = Sandbox(
        id=ids.generate_sandbox_id(),
        display_name="Blog",
        domain="blog.test",
        root_path=str(root),
        port=18080,
        runtime_version="8.2",
        server=BuiltinServerConfig(),
        storage_backend=StorageBackend.EMBEDDED,
        storage_engine_kind=StorageEngineKind.SQLITE,
        status=SandboxStatus.CREATED,
        created_at=FIXED_TIME,
        last_transition_at=FIXED_TIME,
        config_written_at=FIXED_TIME,
    )
    return replace(record, **overrides) if overrides else record


@pytest.fixture
def make_sandbox(tmp_path: Path) -> Callable[..., Sandbox]:
    def _make(**overrides: Any) -> Sandbox:
        root = tmp_path / "sites" / str(overrides.get("domain", "blog.test"))
        root.mkdir(parents=True, exist_ok=True)
        return build_sandbox(root, **overrides)

    return _make


@pytest.fixture
def registry(tmp_path: Path) -> SiteRegistry:
    return SiteRegistry(tmp_path / "state")


@pytest.fixture
def allocator() -> PortAllocator:
    return PortAllocator(range_start=20000, range_end=40000, reserved=())


# ---------------------------------------------------------------------------
# Sandbox processes: a tiny Python HTTP server stands in for the web server.
# ---------------------------------------------------------------------------


def python_http_planner(sandbox: Sandbox, runtime_dir: Path) -> LaunchPlan:
    argv = (
        sys.executable,
        "-u",
        "-m",
        "http.server",
        str(sandbox.port),
        "--bind",
        "127.0.0.1",
        "--directory",
        sandbox.root_path,
    )
    return _plan(sandbox, runtime_dir, argv, HTTP_READY_MARKER)


def sleeping_planner(sandbox: Sandbox, runtime_dir: Path) -> LaunchPlan:
    """A process that never listens and never prints a readiness marker."""
    return _plan(sandbox, runtime_dir, (sys.executable, "-c", "import time; time.sleep(60)"), None)


def crashing_planner(sandbox: Sandbox, runtime_dir: Path) -> LaunchPlan:
    argv = (sys.executable, "-c", "import sys; print('boom: missing extension'); sys.exit(3)")
    return _plan(sandbox, runtime_dir, argv, None)


def planner_by_engine(
    healthy: Callable[[Sandbox, Path], LaunchPlan],
    broken: Callable[[Sandbox, Path], LaunchPlan],
    broken_engines: Collection[str],
) -> Callable[[Sandbox, Path], LaunchPlan]:
    def _planner(sandbox: Sandbox, runtime_dir: Path) -> LaunchPlan:
        if sandbox.server_engine.value in broken_engines:
            return broken(sandbox, runtime_dir)
        return healthy(sandbox, runtime_dir)

    return _planner


def _plan(
    sandbox: Sandbox, runtime_dir: Path, argv: tuple[str, ...], marker: re.Pattern[str] | None
) -> LaunchPlan:
    return LaunchPlan(
        sandbox_id=sandbox.id,
        primary=ProcessSpec(role="server", argv=argv, cwd=runtime_dir),
        companions=(),
        env={**os.environ, "PYTHONUNBUFFERED": "1"},
        files={runtime_dir / "launch.txt": " ".join(argv) + "\n"},
        readiness_marker=marker,
        fingerprint=sandbox.runtime_config().fingerprint(),
    )


def make_supervisor(
    registry: SiteRegistry,
    allocator: PortAllocator,
    planner: Callable[[Sandbox, Path], LaunchPlan] = python_http_planner,
    **overrides: Any,
) -> ProcessSupervisor:
    options: dict[str, Any] = {
        "startup_timeout_seconds": 10.0,
        "readiness_poll_attempts": 40,
        "readiness_poll_interval_seconds": 0.1,
        "stop_grace_seconds": 2.0,
        "health_interval_seconds": 0.2,
        "health_failure_threshold": 2,
    }
    options.update(overrides)
    return ProcessSupervisor(registry, allocator, planner=planner, **options)


# ---------------------------------------------------------------------------
# Storage fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeEngineRegistrar:
    """Installed engines and a set of ports that are 'listening'."""

    installations: dict[StorageEngineKind, list[EngineInstallation]] = field(default_factory=dict)
    listening: set[int] = field(default_factory=set)
    start_fails: bool = False
    comes_up_on_start: bool = True
    prepared: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    start_delay_seconds: float = 0.0

    def install(self, kind: StorageEngineKind, version: str, port: int, *, running: bool = True) -> EngineInstallation:
        installation = EngineInstallation(
            kind=kind,
            version=version,
            binary=Path(f"/opt/{kind.value}-{version}/bin/mysqld"),
            base_dir=Path(f"/opt/{kind.value}-{version}"),
            port=port,
        )
        self.installations.setdefault(kind, []).append(installation)
        if running:
            self.listening.add(port)
        return installation

    def list_installed_engines(self, kind: StorageEngineKind) -> list[EngineInstallation]:
        return list(self.installations.get(kind, []))

    async def prepare_engine(self, installation: EngineInstallation) -> None:
        self.prepared.append(installation.label)

    async def start_engine(self, installation: EngineInstallation) -> None:
        self.started.append(installation.label)
        if self.start_delay_seconds:
            await asyncio.sleep(self.start_delay_seconds)
        if self.start_fails:
            raise EngineStartError(f"{installation.label} refused to start")
        if self.comes_up_on_start:
            self.listening.add(installation.port)

    async def reachable(self, host: str, port: int, timeout: float) -> bool:
        return port in self.listening


@dataclass
class FakeHandshake:
    version: str | None = "8.0.36"
    error: Exception | None = None
    calls: list[tuple[int, StorageCredentials]] = field(default_factory=list)

    async def __call__(self, host: str, port: int, credentials: StorageCredentials, *, timeout: float) -> str | None:
        self.calls.append((port, credentials))
        if self.error is not None:
            raise self.error
        return self.version


@dataclass
class RecordingDomains:
    registered: dict[str, int] = field(default_factory=dict)
    events: list[tuple[str, str]] = field(default_factory=list)

    async def register_domain(self, domain: str, port: int) -> None:
        self.registered[domain] = port
        self.events.append(("register", domain))

    async def unregister_domain(self, domain: str) -> None:
        self.registered.pop(domain, None)
        self.events.append(("unregister", domain))

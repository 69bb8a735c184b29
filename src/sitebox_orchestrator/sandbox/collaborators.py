"""
sitebox-orchestrator — external collaborator contracts and local defaults.

File: src/sitebox_orchestrator/sandbox/collaborators.py

Purpose
- Define the narrow interfaces the engine consumes for work it does not own:
  content provisioning, domain registration and database engine management.
- Ship small local implementations so the CLI works without extra integrations.

Functional requirements
- ``LocalDatabaseEngineRegistrar`` discovers ``mysqld``/``mariadbd`` under configured
  install roots (``<root>/<name-with-version>/bin/<daemon>``) and on ``PATH``, and
  starts one detached with a private data directory, initialising it on first use.
- ``MappingFileDomainRegistrar`` keeps ``domains.json`` (domain -> port) for an external
  hosts/proxy tool; it never edits system name-resolution files.
- ``DocumentRootProvisioner`` only creates the document root; downloading an
  application is an external concern.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from sitebox_orchestrator.constants import DOMAIN_MAP_FILENAME, STORAGE_DEFAULT_PORTS
from sitebox_orchestrator.domain.models import StorageEngineKind
from sitebox_orchestrator.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

_VERSION_IN_NAME: Final[re.Pattern[str]] = re.compile(r"(\d+\.\d+(?:\.\d+)?)")
_DAEMON_NAMES: Final[dict[StorageEngineKind, tuple[str, ...]]] = {
    StorageEngineKind.MYSQL: ("mysqld",),
    StorageEngineKind.MARIADB: ("mariadbd", "mysqld"),
}


class EngineStartError(RuntimeError):
    """A database engine could not be launched."""


@dataclass(frozen=True, slots=True)
class EngineInstallation:
    kind: StorageEngineKind
    version: str | None
    binary: Path
    base_dir: Path
    port: int

    @property
    def label(self) -> str:
        return f"{self.kind.value}-{self.version or 'system'}"


class ContentProvisioner(Protocol):
    async def provision_content(self, root_path: Path, runtime_version_hint: str, *, document_root: str) -> None: ...


class DomainRegistrar(Protocol):
    async def register_domain(self, domain: str, port: int) -> None: ...

    async def unregister_domain(self, domain: str) -> None: ...


class DatabaseEngineRegistrar(Protocol):
    def list_installed_engines(self, kind: StorageEngineKind) -> Sequence[EngineInstallation]: ...

    async def prepare_engine(self, installation: EngineInstallation) -> None:
        """One-time setup (data directory); a no-op once done."""
        ...

    async def start_engine(self, installation: EngineInstallation) -> None: ...


class DocumentRootProvisioner:
    """Create ``<root>/<document_root>``; the directory's content is left to external tooling."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def provision_content(self, root_path: Path, runtime_version_hint: str, *, document_root: str) -> None:
        target = root_path / document_root
        target.mkdir(parents=True, exist_ok=True)
        self._logger.info(
            "content_root_prepared", root_path=str(root_path), runtime_version=runtime_version_hint
        )


class MappingFileDomainRegistrar:
    """Record ``domain -> port`` mappings in ``<state_dir>/domains.json``."""

    def __init__(self, state_dir: str | Path, *, host: str = "127.0.0.1", logger: Any | None = None) -> None:
        self._path = Path(state_dir) / DOMAIN_MAP_FILENAME
        self._host = host
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def mappings(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return self._load()

    async def register_domain(self, domain: str, port: int) -> None:
        with self._lock:
            current = self._load()
            current[domain] = {"host": self._host, "port": port}
            self._store(current)
        self._logger.info("domain_registered", domain=domain, port=port)

    async def unregister_domain(self, domain: str) -> None:
        with self._lock:
            current = self._load()
            if current.pop(domain, None) is None:
                return
            self._store(current)
        self._logger.info("domain_unregistered", domain=domain)

    def _load(self) -> dict[str, dict[str, object]]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            self._logger.warning("domain_map_corrupt", path=str(self._path))
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, dict)}

    def _store(self, payload: dict[str, dict[str, object]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(self._path, json.dumps(payload, sort_keys=True, indent=2) + "\n")


class LocalDatabaseEngineRegistrar:
    """Discover and launch locally installed MySQL-protocol engines."""

    def __init__(
        self,
        *,
        install_roots: Iterable[str | Path] = (),
        data_root: str | Path,
        bind_host: str = "127.0.0.1",
        search_path: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._install_roots = tuple(Path(root) for root in install_roots)
        self._data_root = Path(data_root)
        self._bind_host = bind_host
        self._search_path = search_path
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def list_installed_engines(self, kind: StorageEngineKind) -> list[EngineInstallation]:
        if kind not in _DAEMON_NAMES:
            return []
        found: list[EngineInstallation] = []
        seen: set[Path] = set()
        for root in self._install_roots:
            if not root.is_dir():
                continue
            for candidate in sorted(root.iterdir(), reverse=True):
                installation = self._inspect(candidate, kind)
                if installation is not None and installation.binary not in seen:
                    seen.add(installation.binary)
                    found.append(installation)
        if self._search_path:
            for daemon in _DAEMON_NAMES[kind]:
                resolved = shutil.which(daemon)
                if resolved is None:
                    continue
                binary = Path(resolved).resolve()
                if binary in seen or _vendor_of(binary, binary.parent.parent) is not kind:
                    continue
                seen.add(binary)
                found.append(
                    EngineInstallation(
                        kind=kind,
                        version=None,
                        binary=binary,
                        base_dir=binary.parent.parent,
                        port=STORAGE_DEFAULT_PORTS[kind.value],
                    )
                )
        return found

    async def prepare_engine(self, installation: EngineInstallation) -> None:
        data_dir = self._data_root / installation.label
        if not (data_dir / "mysql").is_dir():
            await self._initialize(installation, data_dir)

    async def start_engine(self, installation: EngineInstallation) -> None:
        data_dir = self._data_root / installation.label
        if not (data_dir / "mysql").is_dir():
            raise EngineStartError(f"data directory for {installation.label} is not initialised")

        log_path = self._data_root / f"{installation.label}.log"
        argv = [
            str(installation.binary),
            f"--basedir={installation.base_dir}",
            f"--datadir={data_dir}",
            f"--port={installation.port}",
            f"--bind-address={self._bind_host}",
            f"--socket={data_dir / 'mysqld.sock'}",
            f"--pid-file={data_dir / 'mysqld.pid'}",
        ]
        self._logger.info("storage_engine_starting", engine=installation.label, port=installation.port)
        try:
            with log_path.open("ab") as log_handle:
                # Detached: the engine outlives this process and is shared by sandboxes.
                await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=log_handle,
                    start_new_session=sys.platform != "win32",
                )
        except OSError as exc:
            raise EngineStartError(f"cannot launch {installation.binary}: {exc}") from exc

    async def _initialize(self, installation: EngineInstallation, data_dir: Path) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        if installation.kind is StorageEngineKind.MARIADB:
            installer = _first_existing(
                installation.base_dir / "bin" / "mariadb-install-db",
                installation.base_dir / "scripts" / "mariadb-install-db",
                installation.base_dir / "scripts" / "mysql_install_db",
            )
            if installer is None:
                raise EngineStartError(f"no mariadb-install-db found under {installation.base_dir}")
            argv = [str(installer), f"--basedir={installation.base_dir}", f"--datadir={data_dir}"]
        else:
            argv = [
                str(installation.binary),
                "--initialize-insecure",
                f"--basedir={installation.base_dir}",
                f"--datadir={data_dir}",
            ]

        self._logger.info("storage_engine_initializing", engine=installation.label, data_dir=str(data_dir))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise EngineStartError(f"cannot initialise data directory: {exc}") from exc
        try:
            output, _ = await proc.communicate()
        except BaseException:
            # Timed out or cancelled by the caller; the installer must not outlive the wait.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        if proc.returncode != 0:
            tail = output.decode("utf-8", errors="replace").strip().splitlines()[-5:]
            raise EngineStartError(f"data directory initialisation failed: {' | '.join(tail)}")

    def _inspect(self, directory: Path, kind: StorageEngineKind) -> EngineInstallation | None:
        if not directory.is_dir():
            return None
        for daemon in _DAEMON_NAMES[kind]:
            for bin_dir in ("bin", "sbin"):
                binary = directory / bin_dir / daemon
                if not (binary.is_file() and os.access(binary, os.X_OK)):
                    continue
                if _vendor_of(binary, directory) is not kind:
                    continue
                match = _VERSION_IN_NAME.search(directory.name)
                return EngineInstallation(
                    kind=kind,
                    version=match.group(1) if match else None,
                    binary=binary,
                    base_dir=directory,
                    port=STORAGE_DEFAULT_PORTS[kind.value],
                )
        return None


def _vendor_of(binary: Path, base_dir: Path) -> StorageEngineKind:
    if binary.name == "mariadbd" or "mariadb" in base_dir.name.lower():
        return StorageEngineKind.MARIADB
    if (base_dir / "bin" / "mariadbd").exists() or (base_dir / "sbin" / "mariadbd").exists():
        return StorageEngineKind.MARIADB
    return StorageEngineKind.MYSQL


def _first_existing(*candidates: Path) -> Path | None:
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


__all__ = [
    "ContentProvisioner",
    "DatabaseEngineRegistrar",
    "DocumentRootProvisioner",
    "DomainRegistrar",
    "EngineInstallation",
    "EngineStartError",
    "LocalDatabaseEngineRegistrar",
    "MappingFileDomainRegistrar",
]

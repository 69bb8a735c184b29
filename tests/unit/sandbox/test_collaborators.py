"""
sitebox-orchestrator — unit tests for local collaborator implementations

File: tests/unit/sandbox/test_collaborators.py

Purpose
- Validate the domain mapping file, document-root provisioning and discovery of locally
  installed database engines.
"""

from __future__ import annotations

import asyncio
import json
import stat
from pathlib import Path

import psutil
import pytest

from sitebox_orchestrator.domain.models import StorageEngineKind
from sitebox_orchestrator.sandbox.collaborators import (
    DocumentRootProvisioner,
    EngineInstallation,
    EngineStartError,
    LocalDatabaseEngineRegistrar,
    MappingFileDomainRegistrar,
)


def _fake_daemon(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


async def test_domain_mapping_file_tracks_register_and_unregister(tmp_path: Path) -> None:
    registrar = MappingFileDomainRegistrar(tmp_path / "state")

    await registrar.register_domain("blog.test", 8001)
    await registrar.register_domain("shop.test", 8002)
    await registrar.unregister_domain("blog.test")
    await registrar.unregister_domain("never.test")

    on_disk = json.loads(registrar.path.read_text(encoding="utf-8"))
    assert on_disk == {"shop.test": {"host": "127.0.0.1", "port": 8002}}
    assert registrar.mappings() == on_disk


async def test_corrupt_domain_mapping_file_is_replaced(tmp_path: Path) -> None:
    registrar = MappingFileDomainRegistrar(tmp_path)
    registrar.path.write_text("{broken", encoding="utf-8")

    assert registrar.mappings() == {}
    await registrar.register_domain("blog.test", 8001)
    assert registrar.mappings() == {"blog.test": {"host": "127.0.0.1", "port": 8001}}


async def test_document_root_provisioner_creates_only_the_directory(tmp_path: Path) -> None:
    await DocumentRootProvisioner().provision_content(tmp_path / "site", "8.2", document_root="public")

    assert (tmp_path / "site" / "public").is_dir()
    assert list((tmp_path / "site" / "public").iterdir()) == []


def test_engine_discovery_reads_install_roots_by_vendor_and_version(tmp_path: Path) -> None:
    roots = tmp_path / "engines"
    _fake_daemon(roots / "mysql-8.0.36" / "bin" / "mysqld")
    _fake_daemon(roots / "mariadb-10.11.6" / "bin" / "mariadbd")
    _fake_daemon(roots / "mysql-5.7" / "sbin" / "mysqld")
    (roots / "not-an-engine").mkdir()

    registrar = LocalDatabaseEngineRegistrar(install_roots=[roots], data_root=tmp_path / "data", search_path=False)

    mysql = registrar.list_installed_engines(StorageEngineKind.MYSQL)
    mariadb = registrar.list_installed_engines(StorageEngineKind.MARIADB)

    assert [item.version for item in mysql] == ["8.0.36", "5.7"]
    assert all(item.port == 3306 for item in mysql)
    assert [item.label for item in mariadb] == ["mariadb-10.11.6"]
    assert mariadb[0].port == 3307
    assert registrar.list_installed_engines(StorageEngineKind.SQLITE) == []


async def test_engine_prepare_reports_unlaunchable_binaries(tmp_path: Path) -> None:
    registrar = LocalDatabaseEngineRegistrar(data_root=tmp_path / "data", search_path=False)
    installation = EngineInstallation(
        kind=StorageEngineKind.MYSQL,
        version="8.0",
        binary=tmp_path / "missing" / "bin" / "mysqld",
        base_dir=tmp_path / "missing",
        port=3306,
    )

    with pytest.raises(EngineStartError, match="cannot initialise"):
        await registrar.prepare_engine(installation)


async def test_mariadb_prepare_requires_an_installer(tmp_path: Path) -> None:
    base = tmp_path / "mariadb-10.11"
    daemon = _fake_daemon(base / "bin" / "mariadbd")
    registrar = LocalDatabaseEngineRegistrar(data_root=tmp_path / "data", search_path=False)
    installation = EngineInstallation(
        kind=StorageEngineKind.MARIADB, version="10.11", binary=daemon, base_dir=base, port=3307
    )

    with pytest.raises(EngineStartError, match="no mariadb-install-db"):
        await registrar.prepare_engine(installation)


async def test_engine_start_requires_a_prepared_data_directory(tmp_path: Path) -> None:
    base = tmp_path / "mysql-8.0"
    daemon = _fake_daemon(base / "bin" / "mysqld")
    registrar = LocalDatabaseEngineRegistrar(data_root=tmp_path / "data", search_path=False)
    installation = EngineInstallation(
        kind=StorageEngineKind.MYSQL, version="8.0", binary=daemon, base_dir=base, port=3306
    )

    with pytest.raises(EngineStartError, match="not initialised"):
        await registrar.start_engine(installation)


async def test_prepare_skips_an_initialised_data_directory(tmp_path: Path) -> None:
    installation = EngineInstallation(
        kind=StorageEngineKind.MYSQL,
        version="8.0",
        binary=tmp_path / "missing" / "bin" / "mysqld",
        base_dir=tmp_path / "missing",
        port=3306,
    )
    (tmp_path / "data" / installation.label / "mysql").mkdir(parents=True)
    registrar = LocalDatabaseEngineRegistrar(data_root=tmp_path / "data", search_path=False)

    await registrar.prepare_engine(installation)


async def test_cancelled_prepare_kills_the_installer(tmp_path: Path) -> None:
    base = tmp_path / "mysql-8.0"
    pid_file = tmp_path / "installer.pid"
    daemon = base / "bin" / "mysqld"
    daemon.parent.mkdir(parents=True)
    daemon.write_text(f'#!/bin/sh\necho $$ > "{pid_file}"\nexec sleep 30\n', encoding="utf-8")
    daemon.chmod(daemon.stat().st_mode | stat.S_IXUSR)
    registrar = LocalDatabaseEngineRegistrar(data_root=tmp_path / "data", search_path=False)
    installation = EngineInstallation(
        kind=StorageEngineKind.MYSQL, version="8.0", binary=daemon, base_dir=base, port=3306
    )

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(registrar.prepare_engine(installation), timeout=1.0)

    pid = int(pid_file.read_text(encoding="utf-8").strip())
    assert not psutil.pid_exists(pid)

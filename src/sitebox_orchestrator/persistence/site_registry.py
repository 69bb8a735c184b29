"""
sitebox-orchestrator — durable sandbox registry.

File: src/sitebox_orchestrator/persistence/site_registry.py

Purpose
- Persist one JSON document per sandbox under ``<state_dir>/sandboxes/<id>/sandbox.json``.

Functional requirements
- Writes are atomic (temp file + fsync + rename); a crash leaves either the old or the new record.
- Domains are unique (case-insensitive) across all persisted records.
- One corrupt record never hides the others: ``list()`` skips and reports it.
- Backups of a record can be taken, restored and discarded by token (used by engine swaps).
- Corrupt record directories can be moved aside into ``<state_dir>/quarantine``.

Non-functional requirements
- The lock is a short ``threading.RLock`` around disk IO; it is never held across an await.
- Disk is authoritative: every read goes to the file, there is no in-memory cache to drift.
"""

from __future__ import annotations

import json
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import structlog

from sitebox_orchestrator.constants import (
    BACKUPS_DIRNAME,
    QUARANTINE_DIRNAME,
    RECORD_FILENAME,
    RUNTIME_DIRNAME,
    SANDBOXES_DIRNAME,
)
from sitebox_orchestrator.domain import ids as domain_ids
from sitebox_orchestrator.domain.errors import (
    DuplicateDomain,
    RegistryCorruption,
    SandboxNotFound,
    ValidationError,
)
from sitebox_orchestrator.domain.models import Sandbox, utc_now
from sitebox_orchestrator.utils.fs import atomic_write, remove_stale_temp_files, safe_delete

SandboxMutator = Callable[[Sandbox], Sandbox]


@dataclass(frozen=True, slots=True)
class RegistryListing:
    """Readable records plus one :class:`RegistryCorruption` per unreadable record."""

    sandboxes: tuple[Sandbox, ...]
    issues: tuple[RegistryCorruption, ...] = ()


class SiteRegistry:
    """File-backed sandbox store; the on-disk records are the source of truth."""

    def __init__(self, state_dir: str | Path, *, logger: Any | None = None) -> None:
        self._state_dir = Path(state_dir)
        self._sandboxes_dir = self._state_dir / SANDBOXES_DIRNAME
        self._sandboxes_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def sandbox_dir(self, sandbox_id: str) -> Path:
        self._require_valid_id(sandbox_id)
        return self._sandboxes_dir / sandbox_id

    def runtime_dir(self, sandbox_id: str) -> Path:
        """Directory for generated server config, sockets and logs of one sandbox."""
        path = self.sandbox_dir(sandbox_id) / RUNTIME_DIRNAME
        path.mkdir(parents=True, exist_ok=True)
        return path

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, record: Sandbox) -> Sandbox:
        with self._lock:
            directory = self.sandbox_dir(record.id)
            if (directory / RECORD_FILENAME).exists():
                raise ValidationError(f"sandbox {record.id!r} already exists", sandbox_id=record.id)
            self._ensure_domain_available(record.domain, exclude_id=record.id)
            directory.mkdir(parents=True, exist_ok=True)
            self._write(record)
        self._logger.info("registry_record_created", sandbox_id=record.id, domain=record.domain)
        return record

    def get(self, sandbox_id: str) -> Sandbox:
        with self._lock:
            return self._read(self._record_path(sandbox_id), sandbox_id)

    def exists(self, sandbox_id: str) -> bool:
        try:
            return self._record_path(sandbox_id).exists()
        except SandboxNotFound:
            return False

    def list(self) -> RegistryListing:
        sandboxes: list[Sandbox] = []
        issues: list[RegistryCorruption] = []
        with self._lock:
            for directory in self._record_dirs():
                try:
                    sandboxes.append(self._read(directory / RECORD_FILENAME, directory.name))
                except RegistryCorruption as exc:
                    issues.append(exc)
                except SandboxNotFound:
                    # Removed between the directory scan and the read.
                    continue
        for issue in issues:
            self._logger.warning(
                "registry_record_corrupt", sandbox_id=issue.sandbox_id, path=issue.path, detail=issue.message
            )
        sandboxes.sort(key=lambda item: (item.created_at, item.id))
        return RegistryListing(sandboxes=tuple(sandboxes), issues=tuple(issues))

    def find_by_domain(self, domain: str) -> Sandbox | None:
        wanted = domain.strip().lower()
        for sandbox in self.list().sandboxes:
            if sandbox.domain == wanted:
                return sandbox
        return None

    def update(self, sandbox_id: str, mutator: SandboxMutator) -> Sandbox:
        """Read-modify-write one record under the registry lock."""
        with self._lock:
            current = self._read(self._record_path(sandbox_id), sandbox_id)
            updated = mutator(current)
            if updated.id != current.id:
                raise ValidationError("sandbox id cannot change", sandbox_id=sandbox_id)
            if updated.domain != current.domain:
                self._ensure_domain_available(updated.domain, exclude_id=sandbox_id)
            if updated != current:
                self._write(updated)
        if updated.status is not current.status:
            self._logger.info(
                "sandbox_status_changed",
                sandbox_id=sandbox_id,
                from_status=current.status.value,
                to_status=updated.status.value,
                last_error=updated.last_error,
            )
        return updated

    def save(self, record: Sandbox) -> Sandbox:
        """Replace an existing record wholesale."""
        return self.update(record.id, lambda _current: record)

    def delete(self, sandbox_id: str) -> None:
        with self._lock:
            directory = self.sandbox_dir(sandbox_id)
            if not directory.exists():
                raise SandboxNotFound(sandbox_id)
            safe_delete(directory, self._sandboxes_dir)
        self._logger.info("registry_record_deleted", sandbox_id=sandbox_id)

    # ------------------------------------------------------------------
    # Swap backups
    # ------------------------------------------------------------------

    def backup(self, sandbox_id: str) -> str:
        """Snapshot the current record and return a token for :meth:`restore`."""
        with self._lock:
            record = self._read(self._record_path(sandbox_id), sandbox_id)
            token = domain_ids.generate_backup_token()
            backups = self.sandbox_dir(sandbox_id) / BACKUPS_DIRNAME
            backups.mkdir(parents=True, exist_ok=True)
            atomic_write(backups / f"{token}.json", _render(record))
        self._logger.info("registry_backup_written", sandbox_id=sandbox_id, backup_token=token)
        return token

    def restore(self, sandbox_id: str, token: str) -> Sandbox:
        """Put back the configuration captured by :meth:`backup`.

        Lifecycle fields (status, port, transition time, last error) keep their current values.
        """
        with self._lock:
            path = self._backup_path(sandbox_id, token)
            if not path.exists():
                raise RegistryCorruption(
                    f"backup {token!r} is missing", sandbox_id=sandbox_id, path=str(path)
                )
            saved = self._read(path, sandbox_id)
            current = self._read(self._record_path(sandbox_id), sandbox_id)
            record = replace(
                saved,
                status=current.status,
                port=current.port,
                last_transition_at=current.last_transition_at,
                last_error=current.last_error,
                config_written_at=utc_now(),
            )
            self._write(record)
        self._logger.info("registry_backup_restored", sandbox_id=sandbox_id, backup_token=token)
        return record

    def discard_backup(self, sandbox_id: str, token: str) -> None:
        with self._lock:
            self._backup_path(sandbox_id, token).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Broken records
    # ------------------------------------------------------------------

    def sweep_temp_files(self) -> list[Path]:
        """Delete leftovers of interrupted writes; only the host lock owner may call this."""
        with self._lock:
            removed = remove_stale_temp_files(self._sandboxes_dir)
        if removed:
            self._logger.info("registry_stale_temp_files_removed", count=len(removed))
        return removed

    def quarantine_corrupt(self) -> list[RegistryCorruption]:
        """Move every unreadable record directory into ``<state_dir>/quarantine``."""
        moved: list[RegistryCorruption] = []
        with self._lock:
            quarantine = self._state_dir / QUARANTINE_DIRNAME
            for issue in self.list().issues:
                if issue.sandbox_id is None:
                    continue
                source = self._sandboxes_dir / issue.sandbox_id
                if not source.exists():
                    continue
                quarantine.mkdir(parents=True, exist_ok=True)
                stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
                shutil.move(str(source), str(quarantine / f"{issue.sandbox_id}.{stamp}"))
                moved.append(issue)
                self._logger.warning("registry_record_quarantined", sandbox_id=issue.sandbox_id)
        return moved

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_dirs(self) -> list[Path]:
        return sorted(path for path in self._sandboxes_dir.iterdir() if path.is_dir() and not path.name.startswith("."))

    def _record_path(self, sandbox_id: str) -> Path:
        return self.sandbox_dir(sandbox_id) / RECORD_FILENAME

    def _backup_path(self, sandbox_id: str, token: str) -> Path:
        try:
            domain_ids.validate_backup_token(token)
        except ValueError as exc:
            raise ValidationError(f"invalid backup token {token!r}", sandbox_id=sandbox_id) from exc
        return self.sandbox_dir(sandbox_id) / BACKUPS_DIRNAME / f"{token}.json"

    def _require_valid_id(self, sandbox_id: str) -> None:
        try:
            domain_ids.validate_sandbox_id(sandbox_id)
        except ValueError as exc:
            raise SandboxNotFound(sandbox_id) from exc

    def _ensure_domain_available(self, domain: str, *, exclude_id: str) -> None:
        for directory in self._record_dirs():
            if directory.name == exclude_id:
                continue
            try:
                other = self._read(directory / RECORD_FILENAME, directory.name)
            except (RegistryCorruption, SandboxNotFound):
                continue
            if other.domain == domain.lower():
                raise DuplicateDomain(domain, owner_id=other.id)

    def _read(self, path: Path, sandbox_id: str) -> Sandbox:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            if path.parent.exists() and path.name == RECORD_FILENAME:
                raise RegistryCorruption(
                    "record file is missing", sandbox_id=sandbox_id, path=str(path)
                ) from exc
            raise SandboxNotFound(sandbox_id) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise RegistryCorruption(f"unreadable record: {exc}", sandbox_id=sandbox_id, path=str(path)) from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RegistryCorruption(f"invalid JSON: {exc}", sandbox_id=sandbox_id, path=str(path)) from exc
        if not isinstance(payload, dict):
            raise RegistryCorruption("record root must be an object", sandbox_id=sandbox_id, path=str(path))
        try:
            record = Sandbox.from_dict(payload)
        except ValidationError as exc:
            raise RegistryCorruption(str(exc), sandbox_id=sandbox_id, path=str(path)) from exc
        if record.id != sandbox_id:
            raise RegistryCorruption(
                f"record id {record.id!r} does not match its directory", sandbox_id=sandbox_id, path=str(path)
            )
        return record

    def _write(self, record: Sandbox) -> None:
        atomic_write(self._record_path(record.id), _render(record))


def _render(record: Sandbox) -> str:
    return json.dumps(record.to_dict(), sort_keys=True, indent=2, ensure_ascii=False) + "\n"


__all__ = ["RegistryListing", "SandboxMutator", "SiteRegistry"]

"""Single-supervisor lock on a state directory, backed by a pid file."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import psutil
import structlog

from sitebox_orchestrator.domain.errors import SupervisorBusy


class HostLock:
    """
    Exclusive ownership of ``<state_dir>/supervisor.lock``.

    A lock file whose pid no longer belongs to a live process is stale and is taken over.
    """

    def __init__(self, path: str | Path, *, logger: Any | None = None) -> None:
        self._path = Path(path)
        self._held = False
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def owner_pid(self) -> int | None:
        try:
            text = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return int(text) if text.isdigit() else None

    def acquire(self) -> None:
        if self._held:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self.owner_pid()
                if owner is not None and owner != os.getpid() and psutil.pid_exists(owner):
                    raise SupervisorBusy(
                        f"state directory {self._path.parent} is owned by running process {owner};"
                        " interrupt it with SIGINT or SIGTERM to stop the sandboxes it serves"
                    ) from None
                self._logger.warning("host_lock_stale", path=str(self._path), owner_pid=owner)
                self._path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{os.getpid()}\n")
            self._held = True
            self._logger.debug("host_lock_acquired", path=str(self._path))
            return
        raise SupervisorBusy(f"could not acquire {self._path}")

    def release(self) -> None:
        if not self._held:
            return
        if self.owner_pid() == os.getpid():
            self._path.unlink(missing_ok=True)
        self._held = False
        self._logger.debug("host_lock_released", path=str(self._path))


__all__ = ["HostLock"]

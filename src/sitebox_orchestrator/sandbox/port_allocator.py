"""
sitebox-orchestrator — TCP port leasing.

File: src/sitebox_orchestrator/sandbox/port_allocator.py

Purpose
- Hand out TCP ports so that no two sandboxes ever hold the same one.

Functional requirements
- One lock serialises every lease and release; callers never race on the same candidate.
- A candidate is leased only when it is not reserved, not leased in-process, and a transient
  bind on the probe host succeeds.
- A preferred port (the sandbox's previous port) is tried first so ports stay sticky.
- Releasing is idempotent.
- ``rehydrate`` restores leases of persisted records at startup.
"""

from __future__ import annotations

import contextlib
import socket
import threading
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from sitebox_orchestrator.constants import DEFAULT_PORT_RANGE, DEFAULT_RESERVED_PORTS
from sitebox_orchestrator.domain.errors import PortExhausted
from sitebox_orchestrator.domain.models import PortLease, Sandbox, utc_now

BindProbe = Callable[[str, int], bool]


def bind_probe(host: str, port: int) -> bool:
    """Return ``True`` when ``host:port`` can be bound right now."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        # No SO_REUSEADDR: a port in TIME_WAIT or owned by any listener must read as busy.
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    def __init__(
        self,
        *,
        range_start: int = DEFAULT_PORT_RANGE[0],
        range_end: int = DEFAULT_PORT_RANGE[1],
        reserved: Iterable[int] = DEFAULT_RESERVED_PORTS,
        probe_host: str = "127.0.0.1",
        probe: BindProbe | None = None,
        logger: Any | None = None,
    ) -> None:
        if not 1 <= range_start <= range_end <= 65535:
            raise ValueError(f"invalid port range {range_start}-{range_end}")
        self._range = (range_start, range_end)
        self._reserved = frozenset(reserved)
        self._probe_host = probe_host
        self._probe = probe if probe is not None else bind_probe
        self._leases: dict[int, PortLease] = {}
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def port_range(self) -> tuple[int, int]:
        return self._range

    def leases(self) -> tuple[PortLease, ...]:
        with self._lock:
            return tuple(sorted(self._leases.values(), key=lambda lease: lease.port))

    def owner_of(self, port: int) -> str | None:
        with self._lock:
            lease = self._leases.get(port)
            return None if lease is None else lease.owner_sandbox_id

    def port_for(self, owner_sandbox_id: str) -> int | None:
        with self._lock:
            for lease in self._leases.values():
                if lease.owner_sandbox_id == owner_sandbox_id:
                    return lease.port
        return None

    def is_bindable(self, port: int) -> bool:
        return self._probe(self._probe_host, port)

    def lease(
        self,
        owner_sandbox_id: str,
        *,
        min_port: int | None = None,
        max_port: int | None = None,
        preferred: int | None = None,
    ) -> PortLease:
        """Lease the preferred port when free, otherwise the lowest free port in range."""
        low = self._range[0] if min_port is None else min_port
        high = self._range[1] if max_port is None else max_port
        if low > high:
            raise ValueError(f"invalid port range {low}-{high}")

        with self._lock:
            existing = self._lease_of(owner_sandbox_id)
            if existing is not None:
                return existing

            candidates: list[int] = []
            if preferred is not None and low <= preferred <= high:
                candidates.append(preferred)
            candidates.extend(port for port in range(low, high + 1) if port != preferred)

            for port in candidates:
                if port in self._reserved or port in self._leases:
                    continue
                if not self._probe(self._probe_host, port):
                    continue
                lease = PortLease(port=port, owner_sandbox_id=owner_sandbox_id, leased_at=utc_now())
                self._leases[port] = lease
                break
            else:
                self._logger.warning("port_range_exhausted", sandbox_id=owner_sandbox_id, min_port=low, max_port=high)
                raise PortExhausted(low, high)

        if preferred is not None and lease.port != preferred:
            self._logger.info(
                "port_reassigned", sandbox_id=owner_sandbox_id, previous_port=preferred, port=lease.port
            )
        else:
            self._logger.debug("port_leased", sandbox_id=owner_sandbox_id, port=lease.port)
        return lease

    def claim(self, owner_sandbox_id: str, port: int) -> bool:
        """Record an existing lease without probing (startup rehydration)."""
        with self._lock:
            current = self._leases.get(port)
            if current is not None:
                return current.owner_sandbox_id == owner_sandbox_id
            self._leases[port] = PortLease(port=port, owner_sandbox_id=owner_sandbox_id, leased_at=utc_now())
            return True

    def release(self, port: int, *, owner_sandbox_id: str | None = None) -> bool:
        """Drop the lease on ``port``; a lease held by a different owner is left alone."""
        with self._lock:
            lease = self._leases.get(port)
            if lease is None:
                return False
            if owner_sandbox_id is not None and lease.owner_sandbox_id != owner_sandbox_id:
                return False
            del self._leases[port]
        self._logger.debug("port_released", sandbox_id=lease.owner_sandbox_id, port=port)
        return True

    def release_owner(self, owner_sandbox_id: str) -> bool:
        with self._lock:
            lease = self._lease_of(owner_sandbox_id)
            if lease is None:
                return False
            del self._leases[lease.port]
        self._logger.debug("port_released", sandbox_id=owner_sandbox_id, port=lease.port)
        return True

    def rehydrate(self, sandboxes: Iterable[Sandbox]) -> list[Sandbox]:
        """Claim ports of lease-holding records; returns records whose port was already taken."""
        conflicts: list[Sandbox] = []
        for sandbox in sandboxes:
            if not sandbox.holds_port_lease:
                continue
            if not self.claim(sandbox.id, sandbox.port):
                conflicts.append(sandbox)
                self._logger.warning("port_lease_conflict", sandbox_id=sandbox.id, port=sandbox.port)
        return conflicts

    def _lease_of(self, owner_sandbox_id: str) -> PortLease | None:
        for lease in self._leases.values():
            if lease.owner_sandbox_id == owner_sandbox_id:
                return lease
        return None


def is_port_listening(host: str, port: int, *, timeout: float = 0.5) -> bool:
    """Return ``True`` when something accepts TCP connections on ``host:port``."""
    with contextlib.suppress(OSError), socket.create_connection((host, port), timeout=timeout):
        return True
    return False


__all__ = ["BindProbe", "PortAllocator", "bind_probe", "is_port_listening"]

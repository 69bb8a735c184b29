"""
sitebox-orchestrator — error taxonomy

File: src/sitebox_orchestrator/domain/errors.py

Purpose
- Typed failures raised by the registry, allocator, verifier, supervisor, swap coordinator
  and orchestrator. Every error carries a stable ``kind`` string used for machine-readable
  CLI output and for exit-code routing.
"""

from __future__ import annotations

from typing import ClassVar


class SiteboxError(RuntimeError):
    """Base class for orchestration failures."""

    kind: ClassVar[str] = "internal"

    def __init__(self, message: str, *, sandbox_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.sandbox_id = sandbox_id

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"kind": self.kind, "message": self.message}
        if self.sandbox_id is not None:
            payload["sandbox_id"] = self.sandbox_id
        return payload


class ValidationError(SiteboxError, ValueError):
    """Malformed create/swap request (name, domain, engine/config combination)."""

    kind = "validation"


class DuplicateDomain(SiteboxError):
    kind = "duplicate_domain"

    def __init__(self, domain: str, *, owner_id: str | None = None) -> None:
        super().__init__(f"domain {domain!r} is already registered", sandbox_id=owner_id)
        self.domain = domain


class PortExhausted(SiteboxError):
    kind = "port_exhausted"

    def __init__(self, min_port: int, max_port: int) -> None:
        super().__init__(f"no free port in range {min_port}-{max_port}")
        self.min_port = min_port
        self.max_port = max_port


class BackendUnavailable(SiteboxError):
    """A client-server storage engine could not be verified."""

    kind = "backend_unavailable"

    def __init__(self, failure_reason: str, message: str, *, sandbox_id: str | None = None) -> None:
        super().__init__(message, sandbox_id=sandbox_id)
        self.failure_reason = failure_reason

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["failure_reason"] = self.failure_reason
        return payload


class ProcessStartTimeout(SiteboxError):
    kind = "process_start_timeout"


class ProcessCrashed(SiteboxError):
    kind = "process_crashed"

    def __init__(self, message: str, *, sandbox_id: str | None = None, exit_code: int | None = None) -> None:
        super().__init__(message, sandbox_id=sandbox_id)
        self.exit_code = exit_code


class SwapFailed(SiteboxError):
    """A swap was rolled back to the previous configuration."""

    kind = "swap_failed"

    def __init__(self, message: str, *, sandbox_id: str | None = None, phase: str) -> None:
        super().__init__(message, sandbox_id=sandbox_id)
        self.phase = phase

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["phase"] = self.phase
        return payload


class SwapRollbackFailed(SiteboxError):
    """Rollback after a failed swap did not complete; the sandbox is left Failed."""

    kind = "swap_rollback_failed"


class RegistryCorruption(SiteboxError):
    """One persisted record could not be parsed or validated."""

    kind = "registry_corruption"

    def __init__(self, message: str, *, sandbox_id: str | None = None, path: str | None = None) -> None:
        super().__init__(message, sandbox_id=sandbox_id)
        self.path = path


class SandboxNotFound(SiteboxError):
    kind = "not_found"

    def __init__(self, sandbox_id: str) -> None:
        super().__init__(f"sandbox {sandbox_id!r} does not exist", sandbox_id=sandbox_id)


class InvalidTransition(SiteboxError):
    kind = "invalid_transition"

    def __init__(self, current: str, target: str, *, sandbox_id: str | None = None) -> None:
        super().__init__(f"cannot move sandbox from {current!r} to {target!r}", sandbox_id=sandbox_id)
        self.current = current
        self.target = target


class SupervisorBusy(SiteboxError):
    """Another live supervisor process owns the state directory."""

    kind = "supervisor_busy"


__all__ = [
    "BackendUnavailable",
    "DuplicateDomain",
    "InvalidTransition",
    "PortExhausted",
    "ProcessCrashed",
    "ProcessStartTimeout",
    "RegistryCorruption",
    "SandboxNotFound",
    "SiteboxError",
    "SupervisorBusy",
    "SwapFailed",
    "SwapRollbackFailed",
    "ValidationError",
]

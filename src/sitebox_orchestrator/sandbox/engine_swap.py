"""
sitebox-orchestrator — in-place engine swaps.

File: src/sitebox_orchestrator/sandbox/engine_swap.py

Purpose
- Change a sandbox's server engine, runtime version or storage engine without changing its
  id, domain or port, and roll back on any failure.

Functional requirements
- A swap walks ``prepared -> applying -> verifying -> committed``; a failure in applying or
  verifying, the overall timeout, or cancellation moves it to ``rolled_back``.
- A changed client-server storage target is verified before the new configuration is
  written; a failed verification rolls back instead of downgrading.
- The process is never left running with a configuration other than the one on disk.
- Run-state is preserved: a sandbox that was not running before the swap is stopped again
  after a successful verification.
- A failed rollback leaves the sandbox failed with an explicit "rollback failed" error and
  its port released.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Final

import httpx
import structlog

from sitebox_orchestrator.domain.errors import (
    InvalidTransition,
    SiteboxError,
    SwapFailed,
    SwapRollbackFailed,
    ValidationError,
)
from sitebox_orchestrator.domain.models import (
    Sandbox,
    SandboxStatus,
    StorageBackend,
    StorageProbeResult,
    SwapPlan,
    SwapRequest,
    SwapState,
    utc_now,
)
from sitebox_orchestrator.persistence.site_registry import SiteRegistry
from sitebox_orchestrator.sandbox.process_supervisor import ProcessSupervisor
from sitebox_orchestrator.sandbox.storage_verifier import StorageBackendVerifier, StorageCredentials
from sitebox_orchestrator.utils.concurrency import CancellationToken, run_with_timeout

FunctionalCheck = Callable[[Sandbox], Awaitable[None]]
CredentialsFactory = Callable[[Sandbox], StorageCredentials]

_SWAPPABLE_STATUSES: Final[frozenset[SandboxStatus]] = frozenset(
    {SandboxStatus.CREATED, SandboxStatus.RUNNING, SandboxStatus.STOPPED, SandboxStatus.FAILED}
)


class FunctionalCheckError(SiteboxError):
    kind = "functional_check_failed"


@dataclass(frozen=True, slots=True)
class SwapOutcome:
    sandbox: Sandbox
    plan: SwapPlan
    probe: StorageProbeResult | None = None


class HttpFunctionalCheck:
    """One HTTP round trip against the sandbox; any non-5xx response passes."""

    def __init__(self, *, host: str = "127.0.0.1", path: str = "/", timeout_seconds: float = 5.0) -> None:
        self._host = host
        self._path = path if path.startswith("/") else f"/{path}"
        self._timeout = timeout_seconds

    async def __call__(self, sandbox: Sandbox) -> None:
        url = f"http://{self._host}:{sandbox.port}{self._path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=False) as client:
                response = await client.get(url, headers={"Host": sandbox.domain})
        except httpx.HTTPError as exc:
            raise FunctionalCheckError(f"GET {url} failed: {exc}", sandbox_id=sandbox.id) from exc
        if response.status_code >= 500:
            raise FunctionalCheckError(
                f"GET {url} returned HTTP {response.status_code}", sandbox_id=sandbox.id
            )


@dataclass(slots=True)
class _SwapProgress:
    plan: SwapPlan
    record: Sandbox
    probe: StorageProbeResult | None = None
    config_written: bool = False

    def advance(self, state: SwapState) -> None:
        self.plan = self.plan.advance(state)


class EngineSwapCoordinator:
    def __init__(
        self,
        registry: SiteRegistry,
        supervisor: ProcessSupervisor,
        verifier: StorageBackendVerifier,
        *,
        timeout_seconds: float = 60.0,
        functional_check: FunctionalCheck | None = None,
        credentials_for: CredentialsFactory | None = None,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._registry = registry
        self._supervisor = supervisor
        self._verifier = verifier
        self._timeout = timeout_seconds
        self._functional_check = functional_check if functional_check is not None else HttpFunctionalCheck()
        self._credentials_for = credentials_for or (lambda _sandbox: StorageCredentials(user="root"))
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def swap(
        self,
        sandbox_id: str,
        request: SwapRequest,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SwapOutcome:
        record = self._registry.get(sandbox_id)
        if record.status not in _SWAPPABLE_STATUSES:
            raise InvalidTransition(record.status.value, "swap", sandbox_id=sandbox_id)
        from_config = record.runtime_config()
        to_config = request.apply_to(from_config)
        if to_config == from_config:
            raise ValidationError("swap request does not change the configuration", sandbox_id=sandbox_id)

        was_running = record.status is SandboxStatus.RUNNING and self._supervisor.is_running(sandbox_id)
        token = self._registry.backup(sandbox_id)
        progress = _SwapProgress(
            plan=SwapPlan(
                sandbox_id=sandbox_id,
                from_config=from_config,
                to_config=to_config,
                backup_token=token,
                was_running=was_running,
            ),
            record=record,
        )
        self._logger.info(
            "swap_prepared",
            sandbox_id=sandbox_id,
            backup_token=token,
            was_running=was_running,
            from_engine=from_config.server.engine.value,
            to_engine=to_config.server.engine.value,
            from_runtime=from_config.runtime_version,
            to_runtime=to_config.runtime_version,
            from_storage=from_config.storage_engine_kind.value,
            to_storage=to_config.storage_engine_kind.value,
        )

        try:
            await run_with_timeout(self._apply_and_verify(progress), self._timeout, cancel_token)
        except asyncio.CancelledError:
            await self._roll_back(progress, "swap cancelled")
            raise
        except TimeoutError:
            phase = progress.plan.state.value
            cause = f"swap exceeded {self._timeout:g}s"
            await self._roll_back(progress, cause)
            raise SwapFailed(cause, sandbox_id=sandbox_id, phase=phase) from None
        except SiteboxError as exc:
            phase = progress.plan.state.value
            await self._roll_back(progress, exc.message)
            raise SwapFailed(
                f"swap failed during {phase}: {exc.message}", sandbox_id=sandbox_id, phase=phase
            ) from exc

        self._registry.discard_backup(sandbox_id, token)
        record = progress.record
        if not was_running:
            record = await self._supervisor.stop(sandbox_id)
        self._logger.info(
            "swap_committed",
            sandbox_id=sandbox_id,
            engine=record.server_engine.value,
            runtime_version=record.runtime_version,
            storage_engine_kind=record.storage_engine_kind.value,
            status=record.status.value,
        )
        return SwapOutcome(sandbox=record, plan=progress.plan, probe=progress.probe)

    async def _apply_and_verify(self, progress: _SwapProgress) -> None:
        sandbox_id = progress.plan.sandbox_id
        to_config = progress.plan.to_config
        current = progress.record

        progress.advance(SwapState.APPLYING)
        endpoint = current.storage_endpoint
        probe = current.storage_probe
        if to_config.storage_backend is StorageBackend.EMBEDDED:
            endpoint, probe = None, None
        elif progress.plan.storage_changed or probe is None:
            probe = await self._verifier.verify_or_raise(
                to_config.storage_engine_kind, self._credentials_for(current), sandbox_id=sandbox_id
            )
            progress.probe = probe
            endpoint = probe.endpoint
            to_config = replace(to_config, storage_engine_kind=probe.engine_kind, storage_version=probe.version)
            progress.plan = replace(progress.plan, to_config=to_config)

        if self._supervisor.is_running(sandbox_id):
            await self._supervisor.stop(sandbox_id, keep_lease=True)
        progress.record = self._registry.update(
            sandbox_id,
            lambda record: record.with_runtime_config(
                to_config, endpoint=endpoint, probe=probe, written_at=utc_now()
            ),
        )
        progress.config_written = True
        self._logger.info("swap_config_written", sandbox_id=sandbox_id, fingerprint=to_config.fingerprint())

        progress.advance(SwapState.VERIFYING)
        progress.record = await self._supervisor.start(sandbox_id)
        if self._supervisor.live_fingerprint(sandbox_id) != progress.record.runtime_config().fingerprint():
            raise SwapFailed(
                "live process configuration does not match the written configuration",
                sandbox_id=sandbox_id,
                phase=SwapState.VERIFYING.value,
            )
        await self._functional_check(progress.record)
        progress.advance(SwapState.COMMITTED)

    async def _roll_back(self, progress: _SwapProgress, cause: str) -> None:
        plan = progress.plan
        sandbox_id = plan.sandbox_id
        if plan.state is not SwapState.ROLLED_BACK:
            progress.advance(SwapState.ROLLED_BACK)
        self._logger.warning("swap_rolling_back", sandbox_id=sandbox_id, cause=cause)
        if not progress.config_written and self._supervisor.is_running(sandbox_id) == plan.was_running:
            # Nothing was changed yet; the original process (if any) is untouched.
            self._registry.discard_backup(sandbox_id, plan.backup_token)
            progress.record = self._registry.get(sandbox_id)
            return
        try:
            await self._supervisor.stop(sandbox_id, keep_lease=plan.was_running)
            restored = self._registry.restore(sandbox_id, plan.backup_token)
            if plan.was_running:
                restored = await self._supervisor.start(sandbox_id)
        except (SiteboxError, OSError) as exc:
            detail = exc.message if isinstance(exc, SiteboxError) else str(exc)
            message = f"rollback failed: {detail} (swap cause: {cause})"
            self._supervisor.release_lease(sandbox_id)
            self._registry.update(sandbox_id, lambda record: _mark_failed(record, message))
            self._logger.error("swap_rollback_failed", sandbox_id=sandbox_id, detail=detail, cause=cause)
            raise SwapRollbackFailed(message, sandbox_id=sandbox_id) from exc
        self._registry.discard_backup(sandbox_id, plan.backup_token)
        progress.record = restored
        self._logger.info("swap_rolled_back", sandbox_id=sandbox_id, status=restored.status.value)


def _mark_failed(record: Sandbox, message: str) -> Sandbox:
    if record.status is SandboxStatus.FAILED:
        return replace(record, last_error=message, last_transition_at=utc_now())
    if record.status is SandboxStatus.RUNNING or record.status is SandboxStatus.STOPPING:
        return record.with_status(SandboxStatus.FAILED, last_error=message)
    # stopped/created cannot move to failed directly
    return record.with_status(SandboxStatus.STARTING).with_status(SandboxStatus.FAILED, last_error=message)


__all__ = [
    "CredentialsFactory",
    "EngineSwapCoordinator",
    "FunctionalCheck",
    "FunctionalCheckError",
    "HttpFunctionalCheck",
    "SwapOutcome",
]

"""
sitebox-orchestrator — sandbox server process supervision.

File: src/sitebox_orchestrator/sandbox/process_supervisor.py

Purpose
- Start, watch and stop the server processes of sandboxes, keeping persisted status in line
  with what is actually running.

Functional requirements
- Process handles live only in this component's in-memory table and are never persisted.
- Start waits for readiness (output marker or bounded port poll) under an overall timeout;
  early exit or timeout terminates the process tree, releases the port and marks the
  record failed. Caller cancellation performs the same cleanup and leaves it stopped.
- A monitor task per running sandbox detects unexpected exits and an unresponsive port.
- Stop is graceful with a bounded grace period, then forceful; it always releases the port
  unless asked to keep it, and is idempotent.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import IO, Any, Final

import psutil
import structlog

from sitebox_orchestrator.constants import SERVER_LOG_FILENAME
from sitebox_orchestrator.domain.errors import ProcessCrashed, ProcessStartTimeout, SiteboxError
from sitebox_orchestrator.domain.models import Sandbox, SandboxStatus, ensure_transition, utc_now
from sitebox_orchestrator.persistence.site_registry import SiteRegistry
from sitebox_orchestrator.sandbox.launch import LaunchPlan, ProcessSpec, RuntimeBinaries, build_launch_plan
from sitebox_orchestrator.sandbox.port_allocator import PortAllocator
from sitebox_orchestrator.sandbox.storage_verifier import tcp_reachable
from sitebox_orchestrator.utils.concurrency import CancellationToken, poll_until, run_with_timeout

LaunchPlanner = Callable[[Sandbox, Path], LaunchPlan]

_OUTPUT_TAIL_LINES: Final[int] = 20
_PUMP_DRAIN_SECONDS: Final[float] = 1.0


@dataclass(slots=True)
class ProcessHandle:
    sandbox_id: str
    process: asyncio.subprocess.Process
    companions: tuple[asyncio.subprocess.Process, ...]
    port: int
    fingerprint: str
    log_path: Path
    started_at: datetime
    last_heartbeat_at: datetime | None = None
    exit_code: int | None = None
    stopping: bool = False
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    output_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_OUTPUT_TAIL_LINES))
    pump_tasks: list[asyncio.Task[None]] = field(default_factory=list)
    monitor_task: asyncio.Task[None] | None = None
    log_handle: IO[bytes] | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def processes(self) -> tuple[asyncio.subprocess.Process, ...]:
        return (self.process, *self.companions)

    def tail(self) -> str:
        return " | ".join(line for line in self.output_tail if line)


@dataclass(frozen=True, slots=True)
class SupervisorFailure:
    sandbox_id: str
    reason: str
    exit_code: int | None = None


class ProcessSupervisor:
    def __init__(
        self,
        registry: SiteRegistry,
        allocator: PortAllocator,
        *,
        binaries: RuntimeBinaries | None = None,
        planner: LaunchPlanner | None = None,
        bind_host: str = "127.0.0.1",
        storage_password: str | None = None,
        startup_timeout_seconds: float = 15.0,
        readiness_poll_attempts: int = 10,
        readiness_poll_interval_seconds: float = 0.5,
        stop_grace_seconds: float = 5.0,
        health_interval_seconds: float = 5.0,
        health_failure_threshold: int = 3,
        logger: Any | None = None,
    ) -> None:
        if startup_timeout_seconds <= 0:
            raise ValueError("startup_timeout_seconds must be > 0")
        if readiness_poll_attempts <= 0 or health_failure_threshold <= 0:
            raise ValueError("poll attempts and failure threshold must be > 0")
        self._registry = registry
        self._allocator = allocator
        self._bind_host = bind_host
        if planner is None:
            planner = partial(
                _plan_with_binaries,
                binaries=binaries or RuntimeBinaries(),
                bind_host=bind_host,
                storage_password=storage_password,
            )
        self._planner = planner
        self._startup_timeout = startup_timeout_seconds
        self._poll_attempts = readiness_poll_attempts
        self._poll_interval = readiness_poll_interval_seconds
        self._stop_grace = stop_grace_seconds
        self._health_interval = health_interval_seconds
        self._health_threshold = health_failure_threshold
        self._handles: dict[str, ProcessHandle] = {}
        self._failures: asyncio.Queue[SupervisorFailure] = asyncio.Queue()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def handle(self, sandbox_id: str) -> ProcessHandle | None:
        return self._handles.get(sandbox_id)

    def is_running(self, sandbox_id: str) -> bool:
        handle = self._handles.get(sandbox_id)
        return handle is not None and handle.process.returncode is None

    def running_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._handles))

    def live_fingerprint(self, sandbox_id: str) -> str | None:
        """Fingerprint of the runtime configuration the live process was launched with."""
        handle = self._handles.get(sandbox_id)
        return None if handle is None else handle.fingerprint

    async def next_failure(self) -> SupervisorFailure:
        """Wait for the next sandbox that failed while supervised."""
        return await self._failures.get()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, sandbox_id: str, *, cancel_token: CancellationToken | None = None) -> Sandbox:
        record = self._registry.get(sandbox_id)
        if record.status is SandboxStatus.RUNNING and self.is_running(sandbox_id):
            return record
        stale = self._handles.pop(sandbox_id, None)
        if stale is not None:
            stale.stopping = True
            await self._terminate(stale)
            record = self._registry.get(sandbox_id)

        ensure_transition(record.status, SandboxStatus.STARTING, sandbox_id=sandbox_id)
        # The lease comes first so a starting record never shows a port another sandbox holds.
        held_port = self._allocator.port_for(sandbox_id)
        port = self._secure_port(record)
        try:
            record = self._registry.update(
                sandbox_id, lambda current: _with_port(current, port).with_status(SandboxStatus.STARTING)
            )
        except BaseException:
            if held_port != port:
                self._allocator.release_owner(sandbox_id)
            raise
        self._logger.info(
            "sandbox_starting", sandbox_id=sandbox_id, port=record.port, engine=record.server_engine.value
        )

        handle: ProcessHandle | None = None
        try:
            runtime_dir = self._registry.runtime_dir(sandbox_id)
            plan = self._planner(record, runtime_dir)
            plan.materialize()
            handle = await self._spawn(record, plan, runtime_dir / SERVER_LOG_FILENAME)
            self._handles[sandbox_id] = handle
            await run_with_timeout(self._await_ready(handle), self._startup_timeout, cancel_token)
        except asyncio.CancelledError:
            await self._abort_start(sandbox_id, handle, status=SandboxStatus.STOPPED, reason=None)
            self._logger.info("sandbox_start_cancelled", sandbox_id=sandbox_id)
            raise
        except TimeoutError:
            reason = f"not ready within {self._startup_timeout:g}s"
            await self._abort_start(sandbox_id, handle, status=SandboxStatus.FAILED, reason=reason)
            raise ProcessStartTimeout(reason, sandbox_id=sandbox_id) from None
        except SiteboxError as exc:
            await self._abort_start(sandbox_id, handle, status=SandboxStatus.FAILED, reason=exc.message)
            raise
        except OSError as exc:
            await self._abort_start(sandbox_id, handle, status=SandboxStatus.FAILED, reason=str(exc))
            raise

        handle.last_heartbeat_at = utc_now()
        handle.monitor_task = asyncio.create_task(self._monitor(handle), name=f"sitebox-monitor-{sandbox_id}")
        record = self._registry.update(sandbox_id, lambda current: current.with_status(SandboxStatus.RUNNING))
        self._logger.info("sandbox_running", sandbox_id=sandbox_id, port=record.port, pid=handle.pid)
        return record

    def _secure_port(self, record: Sandbox) -> int:
        """Lease a bindable port for ``record``, preferring the one it already has."""
        lease = self._allocator.lease(record.id, preferred=record.port)
        if not self._allocator.is_bindable(lease.port):
            self._allocator.release(lease.port, owner_sandbox_id=record.id)
            lease = self._allocator.lease(record.id)
        if lease.port != record.port:
            self._logger.warning(
                "sandbox_port_moved", sandbox_id=record.id, previous_port=record.port, port=lease.port
            )
        return lease.port

    async def _spawn(self, record: Sandbox, plan: LaunchPlan, log_path: Path) -> ProcessHandle:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle = log_path.open("ab")
        companions: list[asyncio.subprocess.Process] = []
        try:
            for spec in plan.companions:
                companions.append(await _launch(spec, plan.env))
            primary = await _launch(plan.primary, plan.env)
        except BaseException as exc:
            # No handle exists yet, so nothing else will reap what was launched.
            for proc in companions:
                await _terminate_tree(proc, grace_seconds=self._stop_grace)
            log_handle.close()
            if isinstance(exc, OSError):
                raise ProcessCrashed(f"cannot launch server process: {exc}", sandbox_id=record.id) from exc
            raise

        handle = ProcessHandle(
            sandbox_id=record.id,
            process=primary,
            companions=tuple(companions),
            port=record.port,
            fingerprint=plan.fingerprint,
            log_path=log_path,
            started_at=utc_now(),
            log_handle=log_handle,
        )
        for proc, role in ((primary, plan.primary.role), *zip(companions, (s.role for s in plan.companions))):
            assert proc.stdout is not None
            handle.pump_tasks.append(asyncio.create_task(self._pump(handle, proc.stdout, role, plan)))
        self._logger.info(
            "sandbox_process_spawned",
            sandbox_id=record.id,
            pid=primary.pid,
            companions=[proc.pid for proc in companions],
            log_path=str(log_path),
        )
        return handle

    async def _pump(self, handle: ProcessHandle, stream: asyncio.StreamReader, role: str, plan: LaunchPlan) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            if handle.log_handle is not None and not handle.log_handle.closed:
                handle.log_handle.write(line)
                handle.log_handle.flush()
            text = line.decode("utf-8", errors="replace").rstrip()
            handle.output_tail.append(f"{role}: {text}")
            if plan.readiness_marker is not None and plan.readiness_marker.search(text):
                handle.ready.set()

    async def _await_ready(self, handle: ProcessHandle) -> None:
        marker_task = asyncio.create_task(handle.ready.wait())
        exit_task = asyncio.create_task(_first_exit(handle.processes))
        poll_task = asyncio.create_task(
            poll_until(
                lambda: tcp_reachable(self._bind_host, handle.port, self._poll_interval),
                attempts=self._poll_attempts,
                interval_seconds=self._poll_interval,
            )
        )
        pending: set[asyncio.Task[Any]] = {marker_task, exit_task, poll_task}
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if exit_task in done:
                    proc = exit_task.result()
                    handle.exit_code = proc.returncode
                    await self._drain_pumps(handle)
                    detail = handle.tail()
                    raise ProcessCrashed(
                        f"process exited with code {proc.returncode} before becoming ready"
                        + (f": {detail}" if detail else ""),
                        sandbox_id=handle.sandbox_id,
                        exit_code=proc.returncode,
                    )
                if marker_task in done:
                    return
                if poll_task in done:
                    if poll_task.result():
                        return
                    raise ProcessStartTimeout(
                        f"port {handle.port} not accepting connections after {self._poll_attempts} attempts",
                        sandbox_id=handle.sandbox_id,
                    )
        finally:
            for task in (marker_task, exit_task, poll_task):
                task.cancel()
            await asyncio.gather(marker_task, exit_task, poll_task, return_exceptions=True)

    async def _abort_start(
        self,
        sandbox_id: str,
        handle: ProcessHandle | None,
        *,
        status: SandboxStatus,
        reason: str | None,
    ) -> None:
        if handle is not None:
            self._handles.pop(sandbox_id, None)
            handle.stopping = True
            await self._terminate(handle)
        self._allocator.release_owner(sandbox_id)
        self._registry.update(sandbox_id, lambda current: _settle(current, status, reason))
        if reason is not None:
            self._logger.error("sandbox_start_failed", sandbox_id=sandbox_id, reason=reason)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def _monitor(self, handle: ProcessHandle) -> None:
        exit_task = asyncio.create_task(_first_exit(handle.processes))
        failures = 0
        try:
            while True:
                done, _ = await asyncio.wait({exit_task}, timeout=self._health_interval)
                if handle.stopping:
                    return
                if done:
                    proc = exit_task.result()
                    handle.exit_code = proc.returncode
                    await self._fail_running(
                        handle, f"process exited unexpectedly with code {proc.returncode}", proc.returncode
                    )
                    return
                if await tcp_reachable(self._bind_host, handle.port, min(self._health_interval, 1.0)):
                    failures = 0
                    handle.last_heartbeat_at = utc_now()
                    continue
                failures += 1
                self._logger.warning(
                    "sandbox_health_check_failed", sandbox_id=handle.sandbox_id, port=handle.port, failures=failures
                )
                if failures >= self._health_threshold:
                    await self._fail_running(handle, f"port {handle.port} unresponsive after {failures} checks", None)
                    return
        finally:
            exit_task.cancel()
            with suppress(asyncio.CancelledError):
                await exit_task

    async def _fail_running(self, handle: ProcessHandle, reason: str, exit_code: int | None) -> None:
        if self._handles.get(handle.sandbox_id) is not handle:
            return
        del self._handles[handle.sandbox_id]
        handle.stopping = True
        await self._terminate(handle)
        self._allocator.release_owner(handle.sandbox_id)
        detail = handle.tail()
        message = f"{reason}: {detail}" if detail else reason
        settled = self._registry.update(
            handle.sandbox_id, lambda current: _settle(current, SandboxStatus.FAILED, message)
        )
        if settled.status is not SandboxStatus.FAILED:
            self._logger.info("sandbox_failure_superseded", sandbox_id=handle.sandbox_id, reason=reason)
            return
        self._logger.error("sandbox_crashed", sandbox_id=handle.sandbox_id, reason=reason, exit_code=exit_code)
        self._failures.put_nowait(SupervisorFailure(handle.sandbox_id, message, exit_code))

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, sandbox_id: str, *, keep_lease: bool = False) -> Sandbox:
        """Stop the sandbox's processes; a stopped or never-started sandbox is returned unchanged."""
        record = self._registry.get(sandbox_id)
        handle = self._handles.pop(sandbox_id, None)
        if handle is None and record.status in {SandboxStatus.STOPPED, SandboxStatus.CREATED}:
            return record

        if record.status is not SandboxStatus.STOPPING:
            record = self._registry.update(sandbox_id, lambda current: current.with_status(SandboxStatus.STOPPING))
        if handle is not None:
            handle.stopping = True
            await self._terminate(handle)
        if not keep_lease:
            self._allocator.release_owner(sandbox_id)
        record = self._registry.update(sandbox_id, lambda current: current.with_status(SandboxStatus.STOPPED))
        self._logger.info("sandbox_stopped", sandbox_id=sandbox_id, port=record.port, kept_lease=keep_lease)
        return record

    def release_lease(self, sandbox_id: str) -> bool:
        return self._allocator.release_owner(sandbox_id)

    async def stop_all(self) -> list[str]:
        stopped: list[str] = []
        for sandbox_id in self.running_ids():
            await self.stop(sandbox_id)
            stopped.append(sandbox_id)
        return stopped

    async def _terminate(self, handle: ProcessHandle) -> None:
        monitor = handle.monitor_task
        if monitor is not None and monitor is not asyncio.current_task() and not monitor.done():
            monitor.cancel()
            with suppress(asyncio.CancelledError):
                await monitor
        for proc in handle.processes:
            await _terminate_tree(proc, grace_seconds=self._stop_grace)
        handle.exit_code = handle.process.returncode
        await self._drain_pumps(handle)
        if handle.log_handle is not None:
            handle.log_handle.close()

    async def _drain_pumps(self, handle: ProcessHandle) -> None:
        if not handle.pump_tasks:
            return
        _, pending = await asyncio.wait(handle.pump_tasks, timeout=_PUMP_DRAIN_SECONDS)
        for task in pending:
            task.cancel()
        await asyncio.gather(*handle.pump_tasks, return_exceptions=True)


def _plan_with_binaries(
    sandbox: Sandbox,
    runtime_dir: Path,
    *,
    binaries: RuntimeBinaries,
    bind_host: str,
    storage_password: str | None,
) -> LaunchPlan:
    return build_launch_plan(
        sandbox,
        binaries=binaries,
        runtime_dir=runtime_dir,
        bind_host=bind_host,
        storage_password=storage_password,
    )


async def _launch(spec: ProcessSpec, env: Any) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *spec.argv,
        cwd=str(spec.cwd),
        env=dict(env),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        # New session so the whole group can be signalled.
        start_new_session=sys.platform != "win32",
    )


async def _first_exit(processes: tuple[asyncio.subprocess.Process, ...]) -> asyncio.subprocess.Process:
    waiters = {asyncio.create_task(proc.wait()): proc for proc in processes}
    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        return waiters[next(iter(done))]
    finally:
        for task in waiters:
            task.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)


def _descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    if sys.platform == "win32":
        with suppress(ProcessLookupError):
            if sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        return
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        with suppress(ProcessLookupError):
            proc.send_signal(sig)


async def _terminate_tree(proc: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
    """SIGTERM the process group, wait ``grace_seconds``, then kill whatever is left."""
    descendants = _descendants(proc.pid)
    if proc.returncode is None:
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        except TimeoutError:
            _signal_group(proc, signal.SIGKILL if sys.platform != "win32" else signal.SIGTERM)
            with suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
    if not descendants:
        return
    for child in descendants:
        with suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            child.terminate()
    _, alive = await asyncio.to_thread(psutil.wait_procs, descendants, timeout=min(grace_seconds, 1.0))
    for child in alive:
        with suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            child.kill()


def _with_port(record: Sandbox, port: int) -> Sandbox:
    return replace(record, port=port)


def _settle(record: Sandbox, status: SandboxStatus, reason: str | None) -> Sandbox:
    if record.status is status:
        return record
    if record.status is SandboxStatus.STOPPED and status is SandboxStatus.FAILED:
        # An explicit stop finished first.
        return record
    return record.with_status(status, last_error=reason)


__all__ = [
    "LaunchPlanner",
    "ProcessHandle",
    "ProcessSupervisor",
    "SupervisorFailure",
]

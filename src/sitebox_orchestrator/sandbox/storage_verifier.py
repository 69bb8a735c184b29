"""
sitebox-orchestrator — storage backend verification.

File: src/sitebox_orchestrator/sandbox/storage_verifier.py

Purpose
- Decide whether a requested storage engine is actually usable before any record may
  declare it.

Functional requirements
- Embedded storage needs no server and verifies immediately.
- Client-server storage is matched by wire protocol: installations of the requested vendor
  are preferred, protocol-compatible vendors follow when substitution is enabled.
- When no compatible instance answers, the first installation is prepared under its own
  bound, then launched and polled; launch plus polling share one grace period.
- Success requires an authenticated handshake within a bounded connect timeout.
- Failures are reported as a probe result with a specific failure reason; only
  ``verify_or_raise`` turns them into ``BackendUnavailable``.
"""

from __future__ import annotations

import asyncio
import math
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Protocol

import pymysql
import structlog

from sitebox_orchestrator.domain.errors import BackendUnavailable
from sitebox_orchestrator.domain.models import (
    ProbeFailureReason,
    StorageBackend,
    StorageEndpoint,
    StorageEngineKind,
    StorageProbeResult,
    utc_now,
)
from sitebox_orchestrator.sandbox.collaborators import (
    DatabaseEngineRegistrar,
    EngineInstallation,
    EngineStartError,
)
from sitebox_orchestrator.utils.concurrency import poll_until, run_with_timeout

DEFAULT_HANDSHAKE_TIMEOUT_SECONDS: Final[float] = 5.0
DEFAULT_START_GRACE_SECONDS: Final[float] = 3.0
DEFAULT_START_POLL_INTERVAL_SECONDS: Final[float] = 0.25
DEFAULT_INIT_TIMEOUT_SECONDS: Final[float] = 120.0

_AUTH_ERROR_CODES: Final[frozenset[int]] = frozenset({1044, 1045, 1698})
_TIMEOUT_ERROR_CODES: Final[frozenset[int]] = frozenset({2013})
_VERSION_RE: Final[re.Pattern[str]] = re.compile(r"(\d+\.\d+(?:\.\d+)?)")
_DATABASE_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_]{1,64}$")


@dataclass(frozen=True, slots=True)
class StorageCredentials:
    user: str
    password: str | None = field(default=None, repr=False)
    database: str | None = None


class HandshakeError(Exception):
    def __init__(self, reason: ProbeFailureReason, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


class Handshaker(Protocol):
    async def __call__(
        self, host: str, port: int, credentials: StorageCredentials, *, timeout: float
    ) -> str | None: ...


ReachabilityProbe = Callable[[str, int, float], Awaitable[bool]]


async def tcp_reachable(host: str, port: int, timeout: float) -> bool:
    """Return ``True`` when something accepts TCP connections on ``host:port``."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def pymysql_handshake(
    host: str, port: int, credentials: StorageCredentials, *, timeout: float
) -> str | None:
    """Authenticate against a MySQL-protocol server and return its reported version."""
    return await asyncio.to_thread(_blocking_handshake, host, port, credentials, timeout)


def _blocking_handshake(host: str, port: int, credentials: StorageCredentials, timeout: float) -> str | None:
    connect_timeout = max(1, math.ceil(timeout))
    try:
        connection = pymysql.connect(
            host=host,
            port=port,
            user=credentials.user,
            password=credentials.password or "",
            connect_timeout=connect_timeout,
            read_timeout=connect_timeout,
            write_timeout=connect_timeout,
        )
    except pymysql.err.OperationalError as exc:
        raise HandshakeError(_classify_operational_error(exc), _error_text(exc)) from exc
    except pymysql.err.MySQLError as exc:
        raise HandshakeError(ProbeFailureReason.NOT_RUNNING, _error_text(exc)) from exc

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT VERSION()")
            row = cursor.fetchone()
            if credentials.database is not None:
                if _DATABASE_NAME_RE.fullmatch(credentials.database) is None:
                    raise HandshakeError(
                        ProbeFailureReason.AUTH_FAILED, f"invalid database name {credentials.database!r}"
                    )
                cursor.execute(f"CREATE DATABASE IF NOT EXISTS `{credentials.database}`")
    except pymysql.err.OperationalError as exc:
        raise HandshakeError(_classify_operational_error(exc), _error_text(exc)) from exc
    except pymysql.err.MySQLError as exc:
        raise HandshakeError(ProbeFailureReason.AUTH_FAILED, _error_text(exc)) from exc
    finally:
        connection.close()
    return None if not row else str(row[0])


def _classify_operational_error(exc: pymysql.err.OperationalError) -> ProbeFailureReason:
    code = exc.args[0] if exc.args and isinstance(exc.args[0], int) else None
    if code in _AUTH_ERROR_CODES:
        return ProbeFailureReason.AUTH_FAILED
    if code in _TIMEOUT_ERROR_CODES or "timed out" in str(exc).lower():
        return ProbeFailureReason.TIMEOUT
    return ProbeFailureReason.NOT_RUNNING


def _error_text(exc: BaseException) -> str:
    if len(exc.args) >= 2:
        return f"({exc.args[0]}) {exc.args[1]}"
    return str(exc) or type(exc).__name__


def parse_engine_version(raw: str | None) -> str | None:
    """``"10.11.6-MariaDB-log"`` -> ``"10.11.6"``."""
    if not raw:
        return None
    match = _VERSION_RE.search(raw)
    return None if match is None else match.group(1)


class StorageBackendVerifier:
    def __init__(
        self,
        registrar: DatabaseEngineRegistrar,
        *,
        host: str = "127.0.0.1",
        handshake_timeout_seconds: float = DEFAULT_HANDSHAKE_TIMEOUT_SECONDS,
        start_grace_seconds: float = DEFAULT_START_GRACE_SECONDS,
        start_poll_interval_seconds: float = DEFAULT_START_POLL_INTERVAL_SECONDS,
        init_timeout_seconds: float = DEFAULT_INIT_TIMEOUT_SECONDS,
        allow_protocol_substitution: bool = True,
        handshake: Handshaker | None = None,
        reachable: ReachabilityProbe | None = None,
        logger: Any | None = None,
    ) -> None:
        if handshake_timeout_seconds <= 0:
            raise ValueError("handshake_timeout_seconds must be > 0")
        if start_grace_seconds < 0 or start_poll_interval_seconds <= 0:
            raise ValueError("start grace must be >= 0 and poll interval > 0")
        if init_timeout_seconds <= 0:
            raise ValueError("init_timeout_seconds must be > 0")
        self._registrar = registrar
        self._host = host
        self._handshake_timeout = handshake_timeout_seconds
        self._start_grace = start_grace_seconds
        self._poll_interval = start_poll_interval_seconds
        self._init_timeout = init_timeout_seconds
        self._allow_substitution = allow_protocol_substitution
        self._handshake = handshake if handshake is not None else pymysql_handshake
        self._reachable = reachable if reachable is not None else tcp_reachable
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def verify(
        self,
        requested_kind: StorageEngineKind,
        credentials: StorageCredentials | None = None,
        timeout: float | None = None,
    ) -> StorageProbeResult:
        """Probe ``requested_kind``; never raises for an unusable backend."""
        requested_kind = StorageEngineKind(requested_kind)
        if requested_kind.backend is StorageBackend.EMBEDDED:
            return StorageProbeResult(engine_kind=requested_kind, reachable=True, verified_at=utc_now())

        handshake_timeout = timeout if timeout is not None else self._handshake_timeout
        installations = self._compatible_installations(requested_kind)
        if not installations:
            return self._failed(requested_kind, ProbeFailureReason.NOT_INSTALLED, "no compatible installation found")

        target = await self._find_running(installations)
        if target is None:
            target = installations[0]
            failure = await self._start_and_wait(target)
            if failure is not None:
                return failure

        effective = credentials or StorageCredentials(user="root")
        try:
            reported = await run_with_timeout(
                self._handshake(self._host, target.port, effective, timeout=handshake_timeout),
                handshake_timeout + 1.0,
            )
        except TimeoutError:
            return self._failed(
                target.kind, ProbeFailureReason.TIMEOUT, f"handshake exceeded {handshake_timeout:g}s"
            )
        except HandshakeError as exc:
            return self._failed(target.kind, exc.reason, exc.detail)

        if target.kind is not requested_kind:
            self._logger.warning(
                "storage_protocol_substitution",
                requested=requested_kind.value,
                actual=target.kind.value,
                port=target.port,
            )
        endpoint = StorageEndpoint(
            host=self._host,
            port=target.port,
            user=effective.user,
            database=effective.database or "mysql",
        )
        result = StorageProbeResult(
            engine_kind=target.kind,
            reachable=True,
            verified_at=utc_now(),
            version=parse_engine_version(reported) or target.version,
            endpoint=endpoint,
        )
        self._logger.info(
            "storage_verified", engine_kind=result.engine_kind.value, version=result.version, port=target.port
        )
        return result

    async def verify_or_raise(
        self,
        requested_kind: StorageEngineKind,
        credentials: StorageCredentials | None = None,
        timeout: float | None = None,
        *,
        sandbox_id: str | None = None,
    ) -> StorageProbeResult:
        result = await self.verify(requested_kind, credentials, timeout)
        if not result.reachable:
            raise BackendUnavailable(
                result.failure_reason.value,
                f"{requested_kind} storage unavailable: {result.detail or result.failure_reason.value}",
                sandbox_id=sandbox_id,
            )
        return result

    def _compatible_installations(self, requested_kind: StorageEngineKind) -> list[EngineInstallation]:
        kinds: Sequence[StorageEngineKind] = (
            requested_kind.family_members() if self._allow_substitution else (requested_kind,)
        )
        found: list[EngineInstallation] = []
        for kind in kinds:
            found.extend(self._registrar.list_installed_engines(kind))
        return found

    async def _find_running(self, installations: Sequence[EngineInstallation]) -> EngineInstallation | None:
        checked: set[int] = set()
        for installation in installations:
            if installation.port in checked:
                continue
            checked.add(installation.port)
            if await self._reachable(self._host, installation.port, self._poll_interval):
                return installation
        return None

    async def _start_and_wait(self, target: EngineInstallation) -> StorageProbeResult | None:
        """Prepare, launch and poll ``target``; every step is bounded."""
        try:
            await run_with_timeout(self._registrar.prepare_engine(target), self._init_timeout)
        except TimeoutError:
            return self._failed(
                target.kind,
                ProbeFailureReason.START_FAILED,
                f"{target.label} data directory not ready after {self._init_timeout:g}s",
            )
        except (EngineStartError, OSError) as exc:
            return self._failed(target.kind, ProbeFailureReason.START_FAILED, str(exc))

        self._logger.info("storage_engine_start_requested", engine=target.label, port=target.port)
        loop = asyncio.get_running_loop()
        grace = max(self._start_grace, self._poll_interval)
        deadline = loop.time() + grace
        try:
            await run_with_timeout(self._registrar.start_engine(target), grace)
        except TimeoutError:
            return self._failed(
                target.kind, ProbeFailureReason.TIMEOUT, f"{target.label} did not start within {grace:g}s"
            )
        except (EngineStartError, OSError) as exc:
            return self._failed(target.kind, ProbeFailureReason.START_FAILED, str(exc))

        remaining = max(0.0, deadline - loop.time())
        came_up = await poll_until(
            lambda: self._reachable(self._host, target.port, self._poll_interval),
            attempts=max(1, math.ceil(remaining / self._poll_interval)),
            interval_seconds=self._poll_interval,
        )
        if not came_up:
            return self._failed(
                target.kind,
                ProbeFailureReason.NOT_RUNNING,
                f"{target.label} not reachable on port {target.port} after {self._start_grace:g}s",
            )
        return None

    def _failed(self, kind: StorageEngineKind, reason: ProbeFailureReason, detail: str) -> StorageProbeResult:
        self._logger.warning("storage_verification_failed", engine_kind=kind.value, reason=reason.value, detail=detail)
        return StorageProbeResult(
            engine_kind=kind,
            reachable=False,
            verified_at=utc_now(),
            failure_reason=reason,
            detail=detail,
        )


__all__ = [
    "DEFAULT_HANDSHAKE_TIMEOUT_SECONDS",
    "DEFAULT_INIT_TIMEOUT_SECONDS",
    "DEFAULT_START_GRACE_SECONDS",
    "HandshakeError",
    "Handshaker",
    "ReachabilityProbe",
    "StorageBackendVerifier",
    "StorageCredentials",
    "parse_engine_version",
    "pymysql_handshake",
    "tcp_reachable",
]

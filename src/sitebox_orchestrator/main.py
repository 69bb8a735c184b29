"""Executable CLI entrypoint for ``sitebox_orchestrator``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract; one code per error kind."""

    SUCCESS = 0
    INTERNAL_ERROR = 1
    CONFIG_ERROR = 2
    INTERRUPTED = 3
    VALIDATION = 10
    DUPLICATE_DOMAIN = 11
    PORT_EXHAUSTED = 12
    BACKEND_UNAVAILABLE = 13
    PROCESS_START_TIMEOUT = 14
    PROCESS_CRASHED = 15
    SWAP_FAILED = 16
    SWAP_ROLLBACK_FAILED = 17
    REGISTRY_CORRUPTION = 18
    NOT_FOUND = 19
    INVALID_TRANSITION = 20
    SUPERVISOR_BUSY = 21


_EXIT_BY_KIND: dict[str, ExitCode] = {
    "validation": ExitCode.VALIDATION,
    "duplicate_domain": ExitCode.DUPLICATE_DOMAIN,
    "port_exhausted": ExitCode.PORT_EXHAUSTED,
    "backend_unavailable": ExitCode.BACKEND_UNAVAILABLE,
    "process_start_timeout": ExitCode.PROCESS_START_TIMEOUT,
    "process_crashed": ExitCode.PROCESS_CRASHED,
    "swap_failed": ExitCode.SWAP_FAILED,
    "functional_check_failed": ExitCode.SWAP_FAILED,
    "swap_rollback_failed": ExitCode.SWAP_ROLLBACK_FAILED,
    "registry_corruption": ExitCode.REGISTRY_CORRUPTION,
    "not_found": ExitCode.NOT_FOUND,
    "invalid_transition": ExitCode.INVALID_TRANSITION,
    "supervisor_busy": ExitCode.SUPERVISOR_BUSY,
}


def exit_code_for_kind(kind: str) -> ExitCode:
    """Map a ``SiteboxError.kind`` to its exit code; unknown kinds are internal errors."""

    return _EXIT_BY_KIND.get(kind, ExitCode.INTERNAL_ERROR)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m sitebox_orchestrator`` and the ``sitebox`` script."""

    try:
        from sitebox_orchestrator.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:  # pragma: no cover - argparse exits on --help and usage errors.
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.INTERRUPTED)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = _route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {int(code) for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _route_exception(exc: BaseException) -> ExitCode:
    from sitebox_orchestrator.config.loader import ConfigLoadError
    from sitebox_orchestrator.config.schema import ConfigValidationError
    from sitebox_orchestrator.domain.errors import SiteboxError

    for item in _iter_exception_chain(exc):
        if isinstance(item, SiteboxError):
            return exit_code_for_kind(item.kind)
        if isinstance(item, (ConfigLoadError, ConfigValidationError)):
            return ExitCode.CONFIG_ERROR
    return ExitCode.INTERNAL_ERROR


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    _write_stderr(str(exc).strip() or exc.__class__.__name__)


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for_kind"]

"""Command-line interface router for sitebox-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import yaml

from sitebox_orchestrator.config import ConfigLoadError, ConfigValidationError, load_config
from sitebox_orchestrator.config.loader import effective_config
from sitebox_orchestrator.control_plane import Orchestrator
from sitebox_orchestrator.domain import ids as domain_ids
from sitebox_orchestrator.domain.errors import SiteboxError
from sitebox_orchestrator.domain.models import (
    Sandbox,
    SandboxSpec,
    SandboxStatus,
    ServerEngine,
    StorageEngineKind,
    SwapRequest,
    default_server_config,
)
from sitebox_orchestrator.main import ExitCode, exit_code_for_kind
from sitebox_orchestrator.observability import correlation_scope, setup_logging, shutdown_logging
from sitebox_orchestrator.ui.render import CLIRenderer, create_renderer

_SERVER_CHOICES: Final[tuple[str, ...]] = tuple(engine.value for engine in ServerEngine)
_STORAGE_CHOICES: Final[tuple[str, ...]] = tuple(kind.value for kind in StorageEngineKind)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.CONFIG_ERROR)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="sitebox",
        description=(
            "sitebox-orchestrator — local web-application sandboxes.\n\n"
            "Common workflows:\n"
            "  sitebox create --domain blog.test --start   Create and serve a sandbox\n"
            "  sitebox list                                Show all sandboxes\n"
            "  sitebox swap-engine ID --server nginx       Change the server engine in place\n"
            "  sitebox delete ID                           Remove a sandbox\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to sitebox TOML config (default: ./sitebox.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name (e.g. strict, fast).",
    )
    common.add_argument(
        "--state-dir",
        default=None,
        help="Override paths.state_dir for this invocation.",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Print one machine-readable JSON status object.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and mirror log records to stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # create --------------------------------------------------------------
    create_parser = subparsers.add_parser(
        "create",
        parents=[common],
        help="Create a sandbox",
        description=(
            "Create a sandbox: lease a port, verify storage, provision the root and register\n"
            "the domain. Flags override values from --spec-file.\n\n"
            "Examples:\n"
            "  sitebox create --name Blog --domain blog.test\n"
            "  sitebox create --spec-file blog.yaml --start\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    create_parser.add_argument("--spec-file", default=None, help="YAML document describing the sandbox.")
    create_parser.add_argument("--name", dest="display_name", default=None, help="Display name.")
    create_parser.add_argument("--domain", default=None, help="Local domain, e.g. blog.test.")
    create_parser.add_argument("--runtime-version", default=None, help="Runtime version, e.g. 8.2.")
    create_parser.add_argument("--server", choices=_SERVER_CHOICES, default=None, help="Server engine.")
    create_parser.add_argument(
        "--document-root", default=None, help="Document root relative to the sandbox root."
    )
    create_parser.add_argument("--storage", choices=_STORAGE_CHOICES, default=None, help="Storage engine.")
    create_parser.add_argument("--root-path", default=None, help="Sandbox root (default: <sites_root>/<domain>).")
    create_parser.add_argument(
        "--start",
        action="store_true",
        default=False,
        help="Start the sandbox and supervise it in the foreground.",
    )
    create_parser.set_defaults(handler=_cmd_create)

    # start / stop / delete / show ---------------------------------------
    start_parser = subparsers.add_parser(
        "start",
        parents=[common],
        help="Start a sandbox and supervise it until interrupted",
        description=(
            "Start a sandbox and keep supervising it in the foreground until SIGINT/SIGTERM\n"
            "or until the sandbox fails.\n\n"
            "Examples:\n"
            "  sitebox start sbx-01HZX...\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    start_parser.add_argument("sandbox_id", help="Sandbox id.")
    start_parser.set_defaults(handler=_cmd_start)

    stop_parser = subparsers.add_parser(
        "stop",
        parents=[common],
        help="Settle a sandbox that no live supervisor is serving as stopped",
        description=(
            "Mark a sandbox stopped and release its port lease.\n\n"
            "A sandbox is only served while the `sitebox start` (or `create --start`) process\n"
            "that launched it keeps running; that process owns the state directory. To stop a\n"
            "served sandbox, interrupt its supervisor with Ctrl-C or SIGTERM. While it runs,\n"
            "this command exits with supervisor_busy and names the owning process id.\n"
            "Without a live supervisor, it settles a failed or interrupted record.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    stop_parser.add_argument("sandbox_id", help="Sandbox id.")
    stop_parser.set_defaults(handler=_cmd_stop)

    delete_parser = subparsers.add_parser(
        "delete",
        parents=[common],
        help="Delete a sandbox record and release its port",
    )
    delete_parser.add_argument("sandbox_id", help="Sandbox id.")
    delete_parser.set_defaults(handler=_cmd_delete)

    show_parser = subparsers.add_parser("show", parents=[common], help="Show one sandbox")
    show_parser.add_argument("sandbox_id", help="Sandbox id.")
    show_parser.set_defaults(handler=_cmd_show)

    # swap-engine ---------------------------------------------------------
    swap_parser = subparsers.add_parser(
        "swap-engine",
        parents=[common],
        help="Change server engine, runtime version or storage in place",
        description=(
            "Swap the server engine, runtime version or storage engine of a sandbox.\n"
            "The configuration is verified before it is committed and rolled back on failure.\n\n"
            "Examples:\n"
            "  sitebox swap-engine sbx-01HZX... --server nginx\n"
            "  sitebox swap-engine sbx-01HZX... --runtime-version 8.3 --start\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    swap_parser.add_argument("sandbox_id", help="Sandbox id.")
    swap_parser.add_argument("--server", choices=_SERVER_CHOICES, default=None, help="Target server engine.")
    swap_parser.add_argument("--document-root", default=None, help="Document root for the new server.")
    swap_parser.add_argument("--runtime-version", default=None, help="Target runtime version.")
    swap_parser.add_argument("--storage", choices=_STORAGE_CHOICES, default=None, help="Target storage engine.")
    swap_parser.add_argument(
        "--start",
        action="store_true",
        default=False,
        help="Start the sandbox first, swap it live and keep supervising it.",
    )
    swap_parser.set_defaults(handler=_cmd_swap)

    # list / cleanup / config --------------------------------------------
    list_parser = subparsers.add_parser("list", parents=[common], help="List sandboxes")
    list_parser.set_defaults(handler=_cmd_list)

    cleanup_parser = subparsers.add_parser(
        "cleanup",
        parents=[common],
        help="Quarantine unreadable sandbox records",
    )
    cleanup_parser.set_defaults(handler=_cmd_cleanup)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective (redacted) configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        with correlation_scope(command=namespace.command):
            result = handler(namespace)
    except CLIError as exc:
        _report_failure(namespace, {"kind": "usage", "message": exc.message})
        return exc.exit_code
    except SiteboxError as exc:
        _report_failure(namespace, exc.to_dict())
        return int(exit_code_for_kind(exc.kind))
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_create(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    spec = _spec_from_args(args, config)
    with _logging_session(config, args):
        return asyncio.run(_create(args, config, spec))


async def _create(args: argparse.Namespace, config: Mapping[str, Any], spec: SandboxSpec) -> int:
    async with Orchestrator.from_config(config) as orchestrator:
        record = await orchestrator.create(spec)
        _report_sandbox(args, record)
        if record.status is SandboxStatus.RUNNING:
            return await _supervise(orchestrator, args, record)
        if not _flag(args, "json"):
            _get_renderer(args).next_steps([f"sitebox start {record.id}"])
    return int(ExitCode.SUCCESS)


def _cmd_start(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sandbox_id = _require_str(getattr(args, "sandbox_id", None), "sandbox_id")
    with _logging_session(config, args), correlation_scope(sandbox_id=sandbox_id):
        return asyncio.run(_start(args, config, sandbox_id))


async def _start(args: argparse.Namespace, config: Mapping[str, Any], sandbox_id: str) -> int:
    async with Orchestrator.from_config(config) as orchestrator:
        record = await orchestrator.start(sandbox_id)
        _report_sandbox(args, record)
        return await _supervise(orchestrator, args, record)


def _cmd_stop(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sandbox_id = _require_str(getattr(args, "sandbox_id", None), "sandbox_id")
    with _logging_session(config, args), correlation_scope(sandbox_id=sandbox_id):
        record = asyncio.run(_with_orchestrator(config, lambda orchestrator: orchestrator.stop(sandbox_id)))
    _report_sandbox(args, record)
    return int(ExitCode.SUCCESS)


def _cmd_delete(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sandbox_id = _require_str(getattr(args, "sandbox_id", None), "sandbox_id")
    with _logging_session(config, args), correlation_scope(sandbox_id=sandbox_id):
        record = asyncio.run(_with_orchestrator(config, lambda orchestrator: orchestrator.delete(sandbox_id)))

    if _flag(args, "json"):
        _emit_json({"ok": True, "command": "delete", "deleted": True, "sandbox": record.to_dict()})
        return int(ExitCode.SUCCESS)
    _get_renderer(args).text(f"Deleted {record.display_name} ({record.id}); port {record.port} released.")
    return int(ExitCode.SUCCESS)


def _cmd_swap(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sandbox_id = _require_str(getattr(args, "sandbox_id", None), "sandbox_id")
    with _logging_session(config, args), correlation_scope(sandbox_id=sandbox_id):
        return asyncio.run(_swap(args, config, sandbox_id))


async def _swap(args: argparse.Namespace, config: Mapping[str, Any], sandbox_id: str) -> int:
    async with Orchestrator.from_config(config) as orchestrator:
        current = orchestrator.get(sandbox_id)
        request = _swap_request_from_args(args, current)
        if _flag(args, "start") and current.status is not SandboxStatus.RUNNING:
            await orchestrator.start(sandbox_id)
        outcome = await orchestrator.swap(sandbox_id, request)
        record = outcome.sandbox
        _report_sandbox(args, record, extra={"swap_state": outcome.plan.state.value})
        if record.status is SandboxStatus.RUNNING:
            return await _supervise(orchestrator, args, record)
    return int(ExitCode.SUCCESS)


def _cmd_list(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    listing = Orchestrator.from_config(config).list()

    if _flag(args, "json"):
        _emit_json(
            {
                "ok": True,
                "command": "list",
                "sandboxes": [record.to_dict() for record in listing.sandboxes],
                "issues": [issue.to_dict() for issue in listing.issues],
            }
        )
        return int(ExitCode.SUCCESS)

    _get_renderer(args).sandbox_table(listing.sandboxes, listing.issues)
    return int(ExitCode.SUCCESS)


def _cmd_show(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sandbox_id = _require_str(getattr(args, "sandbox_id", None), "sandbox_id")
    record = Orchestrator.from_config(config).get(sandbox_id)
    _report_sandbox(args, record)
    return int(ExitCode.SUCCESS)


def _cmd_cleanup(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)

    async def _cleanup(orchestrator: Orchestrator) -> list[dict[str, object]]:
        return [issue.to_dict() for issue in orchestrator.cleanup()]

    with _logging_session(config, args):
        moved = asyncio.run(_with_orchestrator(config, _cleanup))

    if _flag(args, "json"):
        _emit_json({"ok": True, "command": "cleanup", "quarantined": moved})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    if not moved:
        renderer.text("No unreadable records.")
        return int(ExitCode.SUCCESS)
    renderer.heading(f"Quarantined {len(moved)} record(s):")
    renderer.items([f"{item.get('sandbox_id', '?')}: {item['message']}" for item in moved])
    return int(ExitCode.SUCCESS)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"ok": True, "command": "config", "active_profile": profile, "config": redacted})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Foreground supervision
# ---------------------------------------------------------------------------


async def _supervise(orchestrator: Orchestrator, args: argparse.Namespace, record: Sandbox) -> int:
    """Block until SIGINT/SIGTERM or a supervised sandbox fails."""

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)

    if not _flag(args, "json"):
        _get_renderer(args).text(
            f"Serving {record.domain} on port {record.port}; press Ctrl-C to stop."
        )
    sys.stdout.flush()

    stop_task = asyncio.create_task(stop_requested.wait())
    failure_task = asyncio.create_task(orchestrator.next_failure())
    try:
        done, _pending = await asyncio.wait({stop_task, failure_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (stop_task, failure_task):
            task.cancel()
        for signum in installed:
            loop.remove_signal_handler(signum)

    if failure_task in done:
        failure = failure_task.result()
        detail = f"sandbox {failure.sandbox_id} failed: {failure.reason}"
        if failure.exit_code is not None:
            detail = f"{detail} (exit code {failure.exit_code})"
        print(f"error: {detail}", file=sys.stderr)
        return int(ExitCode.PROCESS_CRASHED)
    return int(ExitCode.SUCCESS)


async def _with_orchestrator(config: Mapping[str, Any], operation: Any) -> Any:
    async with Orchestrator.from_config(config) as orchestrator:
        return await operation(orchestrator)


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=_flag(args, "verbose"))


def _report_sandbox(
    args: argparse.Namespace,
    record: Sandbox,
    *,
    extra: Mapping[str, object] | None = None,
) -> None:
    if _flag(args, "json"):
        payload: dict[str, object] = {"ok": True, "command": args.command, "sandbox": record.to_dict()}
        payload.update(extra or {})
        _emit_json(payload)
        return
    _get_renderer(args).sandbox(record)


def _report_failure(args: argparse.Namespace, error: Mapping[str, object]) -> None:
    if _flag(args, "json"):
        _emit_json({"ok": False, "command": getattr(args, "command", None), "error": dict(error)})
        return
    print(f"error: {error['kind']}: {error['message']}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Helpers — config, logging, request building
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    overrides: dict[str, object] = {}
    state_dir = _optional_str(getattr(args, "state_dir", None))
    if state_dir is not None:
        overrides["paths.state_dir"] = str(Path(state_dir).expanduser().resolve())

    try:
        return load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


@contextmanager
def _logging_session(config: Mapping[str, Any], args: argparse.Namespace) -> Iterator[None]:
    handle = setup_logging(
        config["observability"],
        run_id=domain_ids.generate_run_id(),
        log_to_stderr=_flag(args, "verbose"),
    )
    try:
        yield
    finally:
        shutdown_logging(handle)


def _spec_from_args(args: argparse.Namespace, config: Mapping[str, Any]) -> SandboxSpec:
    document: dict[str, object] = {}
    spec_file = _optional_str(getattr(args, "spec_file", None))
    if spec_file is not None:
        document.update(_load_spec_file(Path(spec_file).expanduser()))

    for key in ("display_name", "domain", "runtime_version", "root_path"):
        value = _optional_str(getattr(args, key, None))
        if value is not None:
            document[key] = value
    storage = _optional_str(getattr(args, "storage", None))
    if storage is not None:
        document["storage_engine_kind"] = storage
    if _flag(args, "start"):
        document["start"] = True
    if "display_name" not in document and isinstance(document.get("domain"), str):
        document["display_name"] = document["domain"]

    server_raw = document.get("server")
    if isinstance(server_raw, str):
        server_raw = {"engine": server_raw}
    server: dict[str, object] = (
        dict(server_raw) if isinstance(server_raw, Mapping) else {"engine": config["server"]["default_engine"]}
    )
    engine = _optional_str(getattr(args, "server", None))
    if engine is not None and engine != server.get("engine"):
        server = {"engine": engine}
    server.setdefault("document_root", config["server"]["document_root"])
    document_root = _optional_str(getattr(args, "document_root", None))
    if document_root is not None:
        server["document_root"] = document_root
    document["server"] = server

    defaults = {
        "runtime_version": config["runtime"]["default_version"],
        "storage_engine_kind": config["storage"]["default_engine"],
    }
    return SandboxSpec.from_dict(document, defaults=defaults)


def _load_spec_file(path: Path) -> dict[str, object]:
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CLIError(f"cannot read spec file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise CLIError(f"invalid YAML in spec file {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise CLIError(f"spec file {path} must contain a mapping, got {type(loaded).__name__}")
    return {str(key): value for key, value in loaded.items()}


def _swap_request_from_args(args: argparse.Namespace, current: Sandbox) -> SwapRequest:
    engine = _optional_str(getattr(args, "server", None))
    document_root = _optional_str(getattr(args, "document_root", None))
    server = None
    if engine is not None or document_root is not None:
        server = default_server_config(
            engine or current.server_engine,
            document_root=document_root or current.server.document_root,
        )
    storage = _optional_str(getattr(args, "storage", None))
    return SwapRequest(
        server=server,
        runtime_version=_optional_str(getattr(args, "runtime_version", None)),
        storage_engine_kind=StorageEngineKind(storage) if storage is not None else None,
    )


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string")
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty")
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument")
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


__all__ = ["CLIError", "build_parser", "main", "run_cli"]

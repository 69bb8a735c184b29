"""
sitebox-orchestrator — unit tests for the CLI router

File: tests/unit/ui/test_cli.py

Purpose
- Validate argument parsing, JSON status objects and exit codes of ``run_cli`` in-process.

What this test file should cover
- create/show/list/delete round trip against a temporary state directory.
- Domain errors map to their documented exit codes with a JSON error object.
- Config errors, spec files and the host lock.
"""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

from sitebox_orchestrator.domain import ids
from sitebox_orchestrator.main import ExitCode
from sitebox_orchestrator.ui.cli import build_parser, run_cli


def _write_config(tmp_path: Path) -> Path:
    path = tmp_path / "sitebox.toml"
    path.write_text(
        """
[paths]
state_dir = "state"
sites_root = "sites"

[observability]
log_dir = "logs"

[ports]
range_start = 23000
range_end = 23999
reserved = []
""".strip(),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def config_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SITEBOX_PROFILE", raising=False)
    return _write_config(tmp_path)


def _run_json(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict[str, Any]]:
    code = run_cli([*argv, "--json"])
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    return code, json.loads(lines[-1])


def test_parser_routes_swap_engine_flags() -> None:
    namespace = build_parser().parse_args(
        ["swap-engine", "sbx-1", "--server", "nginx", "--runtime-version", "8.3", "--start", "--json"]
    )

    assert namespace.command == "swap-engine"
    assert namespace.sandbox_id == "sbx-1"
    assert namespace.server == "nginx"
    assert namespace.runtime_version == "8.3"
    assert namespace.start is True
    assert namespace.json is True


def test_parser_rejects_unknown_server_engine() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["create", "--domain", "blog.test", "--server", "lighttpd"])


def test_create_show_list_delete_round_trip(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = str(config_path)

    code, created = _run_json(capsys, "create", "--config", config, "--name", "Blog", "--domain", "Blog.Test")
    assert code == ExitCode.SUCCESS
    sandbox = created["sandbox"]
    assert created["ok"] is True
    assert sandbox["domain"] == "blog.test"
    assert sandbox["status"] == "created"
    assert 23000 <= sandbox["port"] <= 23999
    assert sandbox["storage_engine_kind"] == "sqlite"
    assert Path(sandbox["root_path"]) == (config_path.parent / "sites" / "blog.test").resolve()

    code, shown = _run_json(capsys, "show", sandbox["id"], "--config", config)
    assert code == ExitCode.SUCCESS
    assert shown["sandbox"] == sandbox

    code, listed = _run_json(capsys, "list", "--config", config)
    assert code == ExitCode.SUCCESS
    assert [item["id"] for item in listed["sandboxes"]] == [sandbox["id"]]
    assert listed["issues"] == []

    code, deleted = _run_json(capsys, "delete", sandbox["id"], "--config", config)
    assert code == ExitCode.SUCCESS
    assert deleted["deleted"] is True

    code, listed = _run_json(capsys, "list", "--config", config)
    assert listed["sandboxes"] == []

    log_files = list((config_path.parent / "logs").glob("*/sitebox.jsonl"))
    assert log_files


def test_human_output_for_create_and_list(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["list", "--config", str(config_path)]) == ExitCode.SUCCESS
    assert "No sandboxes." in capsys.readouterr().out

    assert run_cli(["create", "--config", str(config_path), "--domain", "shop.test"]) == ExitCode.SUCCESS
    out = capsys.readouterr().out
    assert "shop.test" in out
    assert "$ sitebox start sbx-" in out

    assert run_cli(["list", "--config", str(config_path)]) == ExitCode.SUCCESS
    table = capsys.readouterr().out
    assert "DOMAIN" in table
    assert "shop.test" in table


def test_state_dir_flag_overrides_config(
    config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    other = tmp_path / "other-state"

    code, created = _run_json(
        capsys, "create", "--config", str(config_path), "--state-dir", str(other), "--domain", "blog.test"
    )

    assert code == ExitCode.SUCCESS
    assert (other / "sandboxes" / created["sandbox"]["id"]).is_dir()
    assert not (tmp_path / "state" / "sandboxes" / created["sandbox"]["id"]).exists()


def test_create_from_spec_file_with_flag_overrides(
    config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    spec_file = tmp_path / "blog.yaml"
    spec_file.write_text(
        "display_name: Company Blog\ndomain: blog.test\nruntime_version: '8.1'\n"
        "server:\n  engine: nginx\n  document_root: public\n",
        encoding="utf-8",
    )

    code, created = _run_json(
        capsys, "create", "--config", str(config_path), "--spec-file", str(spec_file), "--runtime-version", "8.3"
    )

    assert code == ExitCode.SUCCESS
    sandbox = created["sandbox"]
    assert sandbox["display_name"] == "Company Blog"
    assert sandbox["runtime_version"] == "8.3"
    assert sandbox["server"]["engine"] == "nginx"
    assert sandbox["server"]["document_root"] == "public"
    assert (Path(sandbox["root_path"]) / "public").is_dir()


@pytest.mark.parametrize(
    ("argv", "exit_code", "kind"),
    [
        (["create", "--domain", "not a domain"], ExitCode.VALIDATION, "validation"),
        (["show", "__ID__"], ExitCode.NOT_FOUND, "not_found"),
        (["delete", "__ID__"], ExitCode.NOT_FOUND, "not_found"),
        (["swap-engine", "__ID__", "--server", "nginx"], ExitCode.NOT_FOUND, "not_found"),
    ],
)
def test_domain_errors_map_to_exit_codes(
    config_path: Path,
    capsys: pytest.CaptureFixture[str],
    argv: list[str],
    exit_code: ExitCode,
    kind: str,
) -> None:
    missing_id = ids.generate_sandbox_id()
    argv = [missing_id if item == "__ID__" else item for item in argv]

    code, payload = _run_json(capsys, *argv, "--config", str(config_path))

    assert code == exit_code
    assert payload["ok"] is False
    assert payload["error"]["kind"] == kind


def test_duplicate_domain_exit_code(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["create", "--config", str(config_path), "--domain", "blog.test", "--json"]) == ExitCode.SUCCESS
    capsys.readouterr()

    code, payload = _run_json(capsys, "create", "--config", str(config_path), "--domain", "blog.test")

    assert code == ExitCode.DUPLICATE_DOMAIN
    assert "blog.test" in payload["error"]["message"]


def test_swap_without_changes_is_a_validation_error(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _, created = _run_json(capsys, "create", "--config", str(config_path), "--domain", "blog.test")

    code, payload = _run_json(
        capsys, "swap-engine", created["sandbox"]["id"], "--config", str(config_path), "--runtime-version", "8.2"
    )

    assert code == ExitCode.VALIDATION
    assert "does not change" in payload["error"]["message"]


def test_missing_config_file_is_a_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run_json(capsys, "list", "--config", str(tmp_path / "absent.toml"))

    assert code == ExitCode.CONFIG_ERROR
    assert payload["error"]["kind"] == "usage"
    assert "not found" in payload["error"]["message"]


def test_unreadable_spec_file_is_a_config_error(
    config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    spec_file = tmp_path / "broken.yaml"
    spec_file.write_text("- just\n- a list\n", encoding="utf-8")

    code, payload = _run_json(capsys, "create", "--config", str(config_path), "--spec-file", str(spec_file))

    assert code == ExitCode.CONFIG_ERROR
    assert "must contain a mapping" in payload["error"]["message"]


def test_config_command_redacts_and_reports_profile(
    config_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("SITEBOX_DB_PASSWORD", "hunter2")

    code, payload = _run_json(capsys, "config", "--config", str(config_path), "--profile", "strict")

    assert code == ExitCode.SUCCESS
    assert payload["active_profile"] == "strict"
    assert payload["config"]["storage"]["allow_protocol_substitution"] is False
    assert "hunter2" not in json.dumps(payload)


def test_mutating_commands_respect_the_host_lock(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_dir = config_path.parent / "state"
    state_dir.mkdir(parents=True, exist_ok=True)
    with subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"]) as holder:
        try:
            (state_dir / "supervisor.lock").write_text(f"{holder.pid}\n", encoding="utf-8")

            code, payload = _run_json(capsys, "create", "--config", str(config_path), "--domain", "blog.test")
            list_code, listed = _run_json(capsys, "list", "--config", str(config_path))
        finally:
            holder.kill()

    assert code == ExitCode.SUPERVISOR_BUSY
    assert payload["error"]["kind"] == "supervisor_busy"
    assert list_code == ExitCode.SUCCESS
    assert listed["sandboxes"] == []


def test_stop_names_the_live_supervisor_instead_of_stopping(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = str(config_path)
    _, created = _run_json(capsys, "create", "--config", config, "--domain", "blog.test")
    sandbox_id = created["sandbox"]["id"]
    with subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"]) as holder:
        try:
            (config_path.parent / "state" / "supervisor.lock").write_text(f"{holder.pid}\n", encoding="utf-8")
            code, payload = _run_json(capsys, "stop", sandbox_id, "--config", config)
        finally:
            holder.kill()

    assert code == ExitCode.SUPERVISOR_BUSY
    assert str(holder.pid) in payload["error"]["message"]
    assert "SIGTERM" in payload["error"]["message"]
    _, shown = _run_json(capsys, "show", sandbox_id, "--config", config)
    assert shown["sandbox"]["status"] == "created"


def test_stop_help_explains_who_stops_a_served_sandbox(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["stop", "--help"])

    help_text = capsys.readouterr().out
    assert "interrupt its supervisor" in help_text
    assert "supervisor_busy" in help_text

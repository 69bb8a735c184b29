"""
sitebox-orchestrator — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Profile selection by argument and by env var.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from sitebox_orchestrator.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    resolve_storage_password,
)
from sitebox_orchestrator.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _empty_config(tmp_path: Path) -> Path:
    return _write_config(tmp_path / "sitebox.toml", "")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "sitebox.toml"
    _write_config(
        config_path,
        """
[ports]
range_start = 30000
range_end = 30100

[supervisor]
readiness_poll_attempts = 7
""".strip(),
    )

    from_file = load_config(config_path, environ={})
    assert from_file["ports"]["range_start"] == 30000
    assert from_file["supervisor"]["readiness_poll_attempts"] == 7
    # Untouched keys keep their defaults.
    assert from_file["supervisor"]["stop_grace_seconds"] == 5.0

    from_env = load_config(config_path, environ={"SITEBOX_PORTS_RANGE_START": "30010"})
    assert from_env["ports"]["range_start"] == 30010

    from_cli = load_config(
        config_path,
        environ={"SITEBOX_PORTS_RANGE_START": "30010"},
        cli_overrides={"ports.range_start": 30020},
    )
    assert from_cli["ports"]["range_start"] == 30020


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    config = load_config(
        _empty_config(tmp_path),
        environ={
            "SITEBOX_STORAGE_ALLOW_PROTOCOL_SUBSTITUTION": "off",
            "SITEBOX_SUPERVISOR_STOP_GRACE_SECONDS": "1.5",
            "SITEBOX_PORTS_RESERVED": "3306, 5432",
            "SITEBOX_OBSERVABILITY_LOG_LEVEL": "DEBUG",
        },
    )

    assert config["storage"]["allow_protocol_substitution"] is False
    assert config["supervisor"]["stop_grace_seconds"] == 1.5
    assert config["ports"]["reserved"] == [3306, 5432]
    assert config["observability"]["log_level"] == "DEBUG"


@pytest.mark.parametrize(
    ("env_name", "raw", "message"),
    [
        ("SITEBOX_PORTS_RANGE_END", "lots", "must be an integer"),
        ("SITEBOX_SWAP_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("SITEBOX_OBSERVABILITY_REDACT_SECRETS", "maybe", "must be a boolean"),
    ],
)
def test_env_values_that_do_not_coerce_are_rejected(
    tmp_path: Path, env_name: str, raw: str, message: str
) -> None:
    with pytest.raises(ConfigLoadError, match=message):
        load_config(_empty_config(tmp_path), environ={env_name: raw})


def test_missing_default_file_is_fine_but_missing_explicit_file_is_not(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    config = load_config(environ={})
    assert config["storage"]["default_engine"] == "sqlite"

    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_and_invalid_values_are_reported(tmp_path: Path) -> None:
    broken = tmp_path / "broken.toml"
    _write_config(broken, "[ports\nrange_start = 1")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})

    reversed_range = tmp_path / "reversed.toml"
    _write_config(reversed_range, "[ports]\nrange_start = 40000\nrange_end = 30000\n")
    with pytest.raises(ConfigValidationError, match="ports.range_end"):
        load_config(reversed_range, environ={})


def test_strict_profile_disables_protocol_substitution(tmp_path: Path) -> None:
    config_path = _empty_config(tmp_path)

    assert load_config(config_path, environ={})["storage"]["allow_protocol_substitution"] is True
    strict = load_config(config_path, profile="strict", environ={})
    assert strict["storage"]["allow_protocol_substitution"] is False

    fast = load_config(config_path, environ={"SITEBOX_PROFILE": "fast"})
    assert fast["supervisor"]["startup_timeout_seconds"] == 5.0

    # An explicit env override still wins over the profile overlay.
    overridden = load_config(
        config_path,
        profile="strict",
        environ={"SITEBOX_STORAGE_ALLOW_PROTOCOL_SUBSTITUTION": "true"},
    )
    assert overridden["storage"]["allow_protocol_substitution"] is True


def test_unknown_profile_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError, match="profile 'nightly' is not defined"):
        load_config(_empty_config(tmp_path), profile="nightly", environ={})


def test_custom_profile_from_file(tmp_path: Path) -> None:
    config_path = tmp_path / "sitebox.toml"
    _write_config(
        config_path,
        """
[profiles.ci.swap]
timeout_seconds = 5.0
""".strip(),
    )

    config = load_config(config_path, profile="ci", environ={})
    assert config["swap"]["timeout_seconds"] == 5.0
    assert "ci" in config["profiles"]


def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "project" / "sitebox.toml"
    _write_config(
        config_path,
        """
[paths]
state_dir = "./state/../state"
sites_root = "sites"

[storage]
install_roots = ["engines/mysql", "/opt/mariadb"]
""".strip(),
    )

    config = load_config(config_path, environ={})
    config_dir = config_path.resolve().parent

    assert config["paths"]["state_dir"] == (config_dir / "state").as_posix()
    assert config["paths"]["sites_root"] == (config_dir / "sites").as_posix()
    assert config["storage"]["install_roots"] == [
        (config_dir / "engines" / "mysql").as_posix(),
        "/opt/mariadb",
    ]


def test_embedded_password_is_rejected_and_env_password_resolves(tmp_path: Path) -> None:
    config_path = tmp_path / "sitebox.toml"
    _write_config(config_path, '[storage]\npassword = "hunter2"\n')
    with pytest.raises(ConfigValidationError, match="embedded secret values are forbidden"):
        load_config(config_path, environ={})

    config = load_config(_empty_config(tmp_path), environ={})
    assert resolve_storage_password(config, {"SITEBOX_DB_PASSWORD": "s3cret"}) == "s3cret"
    assert resolve_storage_password(config, {}) == ""


def test_dump_effective_config_is_deterministic_json(tmp_path: Path) -> None:
    config = load_config(_empty_config(tmp_path), environ={})

    first = dump_effective_config(config)
    second = dump_effective_config(load_config(_empty_config(tmp_path), environ={}))

    assert first == second
    payload = json.loads(first)
    assert payload["storage"]["password_env"] == "SITEBOX_DB_PASSWORD"
    assert list(payload) == sorted(payload)
    assert "\n" in dump_effective_config(config, indent=2)

"""
sitebox-orchestrator — unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict config schema behavior, structured errors, profile overlays, and redaction.

What this test file should cover
- Built-in defaults validate cleanly.
- Rejects unknown keys and invalid types with actionable paths.
- Rejects embedded secrets while accepting env-var references.
- Profile overlays merge deterministically and are re-validated.
"""

from __future__ import annotations

from typing import Any

import pytest

from sitebox_orchestrator.config.schema import (
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)


def _with(section: str, **values: object) -> dict[str, Any]:
    return merge_config(default_config(), {section: values})


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_default_config_is_valid_and_includes_builtin_profiles() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert set(result.config["profiles"]) >= {"strict", "fast"}


def test_missing_sections_and_unknown_keys_are_reported_with_paths() -> None:
    config = default_config()
    del config["swap"]  # type: ignore[misc]
    payload: dict[str, Any] = merge_config(config, {"ports": {"range_middle": 5}, "plugins": {}})

    result = validate_config(payload)

    messages = {issue.path: issue.message for issue in result.issues}
    assert not result.is_valid
    assert messages["swap"] == "missing required field"
    assert messages["ports.range_middle"] == "unknown field"
    assert messages["plugins"] == "unknown field"


@pytest.mark.parametrize(
    ("section", "values", "path", "message"),
    [
        ("server", {"default_engine": "lighttpd"}, "server.default_engine", "expected one of"),
        ("supervisor", {"stop_grace_seconds": 0}, "supervisor.stop_grace_seconds", "must be > 0"),
        ("supervisor", {"readiness_poll_attempts": True}, "supervisor.readiness_poll_attempts", "expected integer"),
        ("ports", {"range_end": 70000}, "ports.range_end", "must be <= 65535"),
        ("ports", {"reserved": [80, 0]}, "ports.reserved[1]", "must be >= 1"),
        ("storage", {"password_env": "db-password"}, "storage.password_env", "env var name"),
        ("storage", {"init_timeout_seconds": 0}, "storage.init_timeout_seconds", "must be > 0"),
        ("swap", {"functional_check_path": "health"}, "swap.functional_check_path", "must start with '/'"),
        ("runtime", {"default_version": "latest"}, "runtime.default_version", "version like"),
    ],
)
def test_invalid_field_values_are_rejected(
    section: str, values: dict[str, object], path: str, message: str
) -> None:
    result = validate_config(_with(section, **values))

    assert [issue.path for issue in result.issues] == [path]
    assert message in result.issues[0].message


def test_cross_field_rules() -> None:
    assert _issue_paths(_with("ports", range_start=9000, range_end=8000)) == ["ports.range_end"]

    mismatch = _with("runtime", default_version="8.3", binaries={"8.2": "/opt/php82/bin/php"})
    assert _issue_paths(mismatch) == ["runtime.default_version"]

    matching = _with("runtime", default_version="8.2", binaries={"8.2": "/opt/php82/bin/php"})
    assert validate_config(matching).is_valid


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    result = validate_config(_with("meta", schema_version=ConfigSchemaVersion + 1))

    assert [issue.path for issue in result.issues] == ["meta.schema_version"]
    assert "upgrade the sitebox-orchestrator runtime" in result.issues[0].message


def test_embedded_secrets_are_rejected_but_env_references_are_accepted() -> None:
    embedded = _with("storage", db_password="hunter2")
    result = validate_config(embedded)
    assert [issue.path for issue in result.issues] == ["storage.db_password"]
    assert "embedded secret values are forbidden" in result.issues[0].message

    assert validate_config(_with("storage", password_env="SHOP_DB_PASSWORD")).is_valid


def test_profile_overlay_is_validated_and_applied() -> None:
    config = merge_config(
        default_config(),
        {"profiles": {"ci": {"supervisor": {"health_failure_threshold": 1}}}},
    )

    applied = apply_profile_overlay(config, "ci")
    assert applied["supervisor"]["health_failure_threshold"] == 1
    assert applied["supervisor"]["stop_grace_seconds"] == 5.0

    assert apply_profile_overlay(config, None) == merge_config({}, config)

    with pytest.raises(ConfigValidationError, match="profile 'nightly' is not defined"):
        apply_profile_overlay(config, "nightly")

    bad_overlay = merge_config(default_config(), {"profiles": {"ci": {"supervisor": {"stop_grace_seconds": -1}}}})
    assert _issue_paths(bad_overlay) == ["profiles.ci.supervisor.stop_grace_seconds"]

    bad_name = merge_config(default_config(), {"profiles": {"CI": {}}})
    assert _issue_paths(bad_name) == ["profiles.CI"]


def test_validation_error_renders_every_issue() -> None:
    config = merge_config(
        default_config(),
        {"server": {"default_engine": "iis"}, "swap": {"timeout_seconds": 0}},
    )
    result = validate_config(config)

    error = ConfigValidationError(result.issues)

    assert len(error.issues) == 2
    assert "- server.default_engine:" in str(error)
    assert "- swap.timeout_seconds: must be > 0" in str(error)


def test_redaction_is_recursive_and_non_destructive() -> None:
    config: dict[str, Any] = {
        "storage": {"password_env": "SITEBOX_DB_PASSWORD", "nested": {"api_key": "abc"}},
        "items": [{"token": "t"}, {"name": "ok"}],
    }

    redacted = redact_config(config)

    assert redacted["storage"]["password_env"] == "SITEBOX_DB_PASSWORD"
    assert redacted["storage"]["nested"]["api_key"] == "<redacted>"
    assert redacted["items"] == [{"token": "<redacted>"}, {"name": "ok"}]
    assert config["storage"]["nested"]["api_key"] == "abc"
    assert redact_config("not a mapping") == {}

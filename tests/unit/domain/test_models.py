"""Unit tests for core domain models."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st

from conftest import FIXED_TIME, build_sandbox
from sitebox_orchestrator.domain import ids
from sitebox_orchestrator.domain.errors import InvalidTransition, ValidationError
from sitebox_orchestrator.domain.models import (
    ApacheServerConfig,
    BuiltinServerConfig,
    NginxServerConfig,
    ProbeFailureReason,
    Sandbox,
    SandboxRuntimeConfig,
    SandboxSpec,
    SandboxStatus,
    ServerEngine,
    StorageBackend,
    StorageEndpoint,
    StorageEngineKind,
    StorageProbeResult,
    SwapPlan,
    SwapRequest,
    SwapState,
    normalize_domain,
    parse_server_config,
)


def _probe(kind: StorageEngineKind = StorageEngineKind.MYSQL) -> StorageProbeResult:
    return StorageProbeResult(
        engine_kind=kind,
        reachable=True,
        verified_at=FIXED_TIME,
        version="8.0.36",
        endpoint=StorageEndpoint(host="127.0.0.1", port=3306, user="root", database="sitebox_abc"),
    )


def test_sandbox_json_roundtrip_is_canonical(tmp_path: Path) -> None:
    record = build_sandbox(
        tmp_path,
        server=NginxServerConfig(document_root="public"),
        storage_backend=StorageBackend.CLIENT_SERVER,
        storage_engine_kind=StorageEngineKind.MYSQL,
        storage_version="8.0.36",
        storage_probe=_probe(),
        storage_endpoint=_probe().endpoint,
    )

    restored = Sandbox.from_json(record.to_json())

    assert restored == record
    assert restored.to_json() == record.to_json()
    payload = json.loads(record.to_json())
    assert payload["server"]["engine"] == "nginx"
    assert "password" not in json.dumps(payload)


def test_client_server_record_requires_reachable_probe(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="storage_probe"):
        build_sandbox(
            tmp_path,
            storage_backend=StorageBackend.CLIENT_SERVER,
            storage_engine_kind=StorageEngineKind.MYSQL,
        )

    with pytest.raises(ValidationError, match="probe engine"):
        build_sandbox(
            tmp_path,
            storage_backend=StorageBackend.CLIENT_SERVER,
            storage_engine_kind=StorageEngineKind.MARIADB,
            storage_probe=_probe(StorageEngineKind.MYSQL),
            storage_endpoint=_probe().endpoint,
        )


def test_backend_must_match_engine_kind(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="not a embedded engine"):
        build_sandbox(tmp_path, storage_engine_kind=StorageEngineKind.MYSQL)


def test_probe_result_reason_consistency() -> None:
    with pytest.raises(ValidationError):
        StorageProbeResult(
            engine_kind=StorageEngineKind.MYSQL,
            reachable=True,
            verified_at=FIXED_TIME,
            failure_reason=ProbeFailureReason.TIMEOUT,
        )
    with pytest.raises(ValidationError):
        StorageProbeResult(engine_kind=StorageEngineKind.MYSQL, reachable=False, verified_at=FIXED_TIME)


def test_lifecycle_transitions_follow_state_machine(tmp_path: Path) -> None:
    record = build_sandbox(tmp_path)
    starting = record.with_status(SandboxStatus.STARTING)
    running = starting.with_status(SandboxStatus.RUNNING)
    failed = running.with_status(SandboxStatus.FAILED, last_error="port unresponsive")

    assert failed.last_error == "port unresponsive"
    assert failed.with_status(SandboxStatus.STARTING).last_error is None
    assert record.holds_port_lease and running.holds_port_lease
    assert not failed.holds_port_lease

    with pytest.raises(InvalidTransition):
        record.with_status(SandboxStatus.RUNNING)
    with pytest.raises(InvalidTransition):
        running.with_status(SandboxStatus.STOPPED)


def test_sandbox_spec_from_dict_normalizes_and_applies_defaults() -> None:
    spec = SandboxSpec.from_dict(
        {"display_name": " Shop ", "domain": "Shop.Test.", "server": "apache"},
        defaults={"runtime_version": "8.1", "storage_engine_kind": "sqlite"},
    )

    assert spec.display_name == "Shop"
    assert spec.domain == "shop.test"
    assert isinstance(spec.server, ApacheServerConfig)
    assert spec.runtime_version == "8.1"
    assert spec.start is False


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ({"display_name": "x", "runtime_version": "8.2"}, "missing required"),
        ({"display_name": "x", "domain": "bad_domain.test", "runtime_version": "8.2"}, "invalid domain label"),
        ({"display_name": "a/b", "domain": "ok.test", "runtime_version": "8.2"}, "path separators"),
        ({"display_name": "x", "domain": "ok.test", "runtime_version": "eight"}, "expected a version"),
        ({"display_name": "x", "domain": "ok.test", "runtime_version": "8.2", "color": "red"}, "unexpected"),
    ],
)
def test_sandbox_spec_rejects_malformed_requests(document: dict[str, object], message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        SandboxSpec.from_dict(document)


def test_parse_server_config_rejects_foreign_fields() -> None:
    nginx = parse_server_config({"engine": "nginx", "fastcgi_children": 4})
    assert isinstance(nginx, NginxServerConfig)
    assert nginx.fastcgi_children == 4

    with pytest.raises(ValidationError, match="unexpected fields"):
        parse_server_config({"engine": "builtin", "fastcgi_children": 4})


def test_swap_request_keeps_unset_fields_and_drops_stale_storage_version() -> None:
    current = SandboxRuntimeConfig(
        server=BuiltinServerConfig(),
        runtime_version="8.2",
        storage_engine_kind=StorageEngineKind.MYSQL,
        storage_version="8.0.36",
    )

    engine_only = SwapRequest(server=NginxServerConfig()).apply_to(current)
    assert engine_only.server.engine is ServerEngine.NGINX
    assert engine_only.storage_version == "8.0.36"

    storage_change = SwapRequest(storage_engine_kind=StorageEngineKind.MARIADB).apply_to(current)
    assert storage_change.storage_version is None
    assert storage_change.runtime_version == "8.2"

    with pytest.raises(ValidationError, match="at least one"):
        SwapRequest()


def test_swap_plan_moves_forward_only() -> None:
    config = SandboxRuntimeConfig(
        server=BuiltinServerConfig(), runtime_version="8.2", storage_engine_kind=StorageEngineKind.SQLITE
    )
    plan = SwapPlan(
        sandbox_id=ids.generate_sandbox_id(),
        from_config=config,
        to_config=replace(config, runtime_version="8.3"),
        backup_token=ids.generate_backup_token(),
        was_running=False,
    )

    committed = plan.advance(SwapState.APPLYING).advance(SwapState.VERIFYING).advance(SwapState.COMMITTED)
    assert committed.state is SwapState.COMMITTED
    with pytest.raises(InvalidTransition):
        committed.advance(SwapState.ROLLED_BACK)
    assert plan.advance(SwapState.ROLLED_BACK).state is SwapState.ROLLED_BACK


def test_fingerprint_changes_with_runtime_config() -> None:
    base = SandboxRuntimeConfig(
        server=BuiltinServerConfig(), runtime_version="8.2", storage_engine_kind=StorageEngineKind.SQLITE
    )
    assert base.fingerprint() == replace(base).fingerprint()
    assert base.fingerprint() != replace(base, runtime_version="8.3").fingerprint()
    assert base.fingerprint() != replace(base, server=NginxServerConfig()).fingerprint()


_LABEL = st.from_regex(r"[a-z][a-z0-9]{0,10}", fullmatch=True)


@given(labels=st.lists(_LABEL, min_size=2, max_size=4))
def test_normalize_domain_is_idempotent_and_case_insensitive(labels: list[str]) -> None:
    domain = ".".join(labels)
    normalized = normalize_domain(domain.upper())

    assert normalized == domain
    assert normalize_domain(normalized) == normalized

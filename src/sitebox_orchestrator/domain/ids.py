"""Identifier generation and validation for sandboxes, runs and swap backups."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

# Stable entity ID prefixes.
SANDBOX_ID_PREFIX: Final[str] = "sbx"
RUN_ID_PREFIX: Final[str] = "run"
BACKUP_TOKEN_PREFIX: Final[str] = "bak"

_ULID_RE: Final[re.Pattern[str]] = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")

_RandBytes = Callable[[int], bytes]

__all__ = [
    "BACKUP_TOKEN_PREFIX",
    "RUN_ID_PREFIX",
    "SANDBOX_ID_PREFIX",
    "generate_backup_token",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_sandbox_id",
    "generate_ulid",
    "short_id",
    "validate_backup_token",
    "validate_prefixed_id",
    "validate_sandbox_id",
]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {ts_ms}")
    raw = (secrets.token_bytes if randbytes is None else randbytes)(ULID_RANDOM_BYTES)
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(bytes(raw), "big")
    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a stable prefixed ID in the form ``<prefix>-<ulid>``."""
    _validate_prefix(prefix)
    return f"{prefix}{_PREFIX_SEPARATOR}{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Validate ``<prefix>-<ulid>`` format and enforce ``expected_prefix``."""
    _validate_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")

    expected_lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not id_str.startswith(expected_lead):
        raise ValueError(f"expected prefix '{expected_lead}' in {id_str!r}")
    if _ULID_RE.fullmatch(id_str[len(expected_lead) :]) is None:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {id_str!r}")


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""
    if len(id_str) < 8:
        raise ValueError("id must be at least 8 characters")
    return id_str[-8:]


def generate_sandbox_id(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    return generate_prefixed_id(SANDBOX_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_sandbox_id(id_str: str) -> None:
    validate_prefixed_id(id_str, SANDBOX_ID_PREFIX)


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    return generate_prefixed_id(RUN_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_backup_token(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    return generate_prefixed_id(BACKUP_TOKEN_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_backup_token(id_str: str) -> None:
    validate_prefixed_id(id_str, BACKUP_TOKEN_PREFIX)


def _validate_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_PREFIX_SEPARATOR}'")

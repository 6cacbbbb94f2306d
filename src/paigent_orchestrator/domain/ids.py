"""Prefixed ULID identifiers for runs, steps, events, tools, reservations and receipts."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

RUN_ID_PREFIX: Final[str] = "run"
STEP_ID_PREFIX: Final[str] = "stp"
EVENT_ID_PREFIX: Final[str] = "evt"
TOOL_ID_PREFIX: Final[str] = "tool"
RESERVATION_ID_PREFIX: Final[str] = "rsv"
RECEIPT_ID_PREFIX: Final[str] = "rcpt"

_SEPARATOR: Final[str] = "-"
_DECODE: Final[dict[str, int]] = {char: idx for idx, char in enumerate(CROCKFORD_BASE32_ALPHABET)}

RandBytes = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    """Return a 26-character Crockford Base32 ULID (48-bit ms time + 80 random bits)."""
    ts = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(ts, int) or isinstance(ts, bool):
        raise ValueError(f"timestamp_ms must be an int, got {type(ts).__name__}")
    if not 0 <= ts <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {ts}")

    raw = (secrets.token_bytes if randbytes is None else randbytes)(ULID_RANDOM_BYTES)
    if not isinstance(raw, (bytes, bytearray, memoryview)) or len(bytes(raw)) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts << 80) | int.from_bytes(bytes(raw), "big")
    chars: list[str] = []
    for _ in range(ULID_LENGTH):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0b11111])
        value >>= 5
    return "".join(reversed(chars))


def validate_ulid(value: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    for index, char in enumerate(value):
        if char.upper() not in _DECODE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
    # 26 chars carry 130 bits; the leading char must keep the value within 128 bits.
    if _DECODE[value[0].upper()] > 7:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def ulid_timestamp_ms(value: str) -> int:
    validate_ulid(value)
    decoded = 0
    for char in value:
        decoded = (decoded << 5) | _DECODE[char.upper()]
    return decoded >> 80


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: RandBytes | None = None,
) -> str:
    """Return ``<prefix>-<ULID>``."""
    _check_prefix(prefix)
    return f"{prefix}{_SEPARATOR}{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    lead = f"{expected_prefix}{_SEPARATOR}"
    if not id_str.startswith(lead):
        raise ValueError(f"expected prefix '{lead}' (got {id_str!r})")
    try:
        validate_ulid(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return generate_prefixed_id(RUN_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_step_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return generate_prefixed_id(STEP_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_event_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_tool_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return generate_prefixed_id(TOOL_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_reservation_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(RESERVATION_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_receipt_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(RECEIPT_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_run_id(id_str: str) -> None:
    validate_prefixed_id(id_str, RUN_ID_PREFIX)


def validate_step_id(id_str: str) -> None:
    validate_prefixed_id(id_str, STEP_ID_PREFIX)


def validate_event_id(id_str: str) -> None:
    validate_prefixed_id(id_str, EVENT_ID_PREFIX)


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_SEPARATOR}'")


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "RECEIPT_ID_PREFIX",
    "RESERVATION_ID_PREFIX",
    "RUN_ID_PREFIX",
    "STEP_ID_PREFIX",
    "TOOL_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "RandBytes",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_receipt_id",
    "generate_reservation_id",
    "generate_run_id",
    "generate_step_id",
    "generate_tool_id",
    "generate_ulid",
    "ulid_timestamp_ms",
    "validate_event_id",
    "validate_prefixed_id",
    "validate_run_id",
    "validate_step_id",
    "validate_ulid",
]

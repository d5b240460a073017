"""Time-ordered identifiers for work items and engine runs."""

from __future__ import annotations

import secrets
import threading
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_ULID_RANDOM_MAX: Final[int] = (1 << 80) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

WORK_ITEM_ID_PREFIX: Final[str] = "wi"
RUN_ID_PREFIX: Final[str] = "run"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]

__all__ = [
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "WORK_ITEM_ID_PREFIX",
    "MonotonicUlidFactory",
    "generate_run_id",
    "generate_ulid",
    "generate_work_item_id",
    "parse_ulid_timestamp_ms",
    "validate_prefixed_id",
    "validate_ulid",
    "validate_work_item_id",
]


class MonotonicUlidFactory:
    """ULID source whose output sorts strictly in generation order.

    Within one millisecond the random component is incremented instead of redrawn,
    so lexical order of the identifiers matches admission order.
    """

    def __init__(
        self,
        *,
        clock_ms: Callable[[], int] | None = None,
        randbytes: _RandBytes | None = None,
    ) -> None:
        self._clock_ms = clock_ms or (lambda: time.time_ns() // 1_000_000)
        self._randbytes = randbytes or secrets.token_bytes
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random = 0

    def __call__(self) -> str:
        with self._lock:
            now_ms = max(_check_timestamp(self._clock_ms()), self._last_ms)
            if now_ms == self._last_ms:
                if self._last_random >= _ULID_RANDOM_MAX:
                    now_ms += 1
                    random_part = _draw_random(self._randbytes)
                else:
                    random_part = self._last_random + 1
            else:
                random_part = _draw_random(self._randbytes)
            self._last_ms = _check_timestamp(now_ms)
            self._last_random = random_part
        return _encode_crockford_base32((now_ms << 80) | random_part, ULID_LENGTH)


_DEFAULT_FACTORY = MonotonicUlidFactory()


def generate_ulid() -> str:
    """Generate a 26-character ULID, strictly increasing within this process."""
    return _DEFAULT_FACTORY()


def validate_ulid(s: str) -> None:
    """Validate a ULID and raise ``ValueError`` with precise context on failure."""
    _ = _decode(s)


def parse_ulid_timestamp_ms(s: str) -> int:
    """Extract the 48-bit millisecond timestamp from a validated ULID."""
    return _decode(s) >> 80


def generate_work_item_id() -> str:
    return f"{WORK_ITEM_ID_PREFIX}{_PREFIX_SEPARATOR}{generate_ulid()}"


def generate_run_id() -> str:
    return f"{RUN_ID_PREFIX}{_PREFIX_SEPARATOR}{generate_ulid()}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Validate ``<prefix>-<ulid>`` format and enforce ``expected_prefix``."""
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    expected_lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not id_str.startswith(expected_lead):
        raise ValueError(f"expected prefix '{expected_lead}' in {id_str!r}")
    try:
        validate_ulid(id_str[len(expected_lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def validate_work_item_id(id_str: str) -> None:
    validate_prefixed_id(id_str, WORK_ITEM_ID_PREFIX)


def _check_timestamp(value: int) -> int:
    if not 0 <= value <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")
    return value


def _draw_random(randbytes: _RandBytes) -> int:
    raw = bytes(randbytes(ULID_RANDOM_BYTES))
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    # Keep headroom so same-millisecond increments rarely roll into the next millisecond.
    return int.from_bytes(raw, "big") >> 1


def _decode(value: str) -> int:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    if value[0] not in "01234567":
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")

    decoded = 0
    for index, char in enumerate(value):
        digit = _DECODE_TABLE.get(char.upper())
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
        decoded = (decoded << 5) | digit
    return decoded


def _encode_crockford_base32(value: int, length: int) -> str:
    chars = ["0"] * length
    working = value
    for index in range(length - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[working & 0b11111]
        working >>= 5
    if working != 0:
        raise ValueError(f"value does not fit into {length} Crockford Base32 characters")
    return "".join(chars)

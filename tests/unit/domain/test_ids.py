"""Unit tests for time-ordered work item and run identifiers."""

from __future__ import annotations

import pytest

from docflow.domain import ids


def _fixed_bytes(size: int) -> bytes:
    return b"\x00" * size


def test_work_item_ids_carry_prefix_and_validate() -> None:
    work_id = ids.generate_work_item_id()
    assert work_id.startswith("wi-")
    assert len(work_id) == len("wi-") + ids.ULID_LENGTH
    ids.validate_work_item_id(work_id)


def test_run_id_is_rejected_as_work_item_id() -> None:
    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_work_item_id(ids.generate_run_id())


def test_factory_output_sorts_in_generation_order_within_one_millisecond() -> None:
    factory = ids.MonotonicUlidFactory(clock_ms=lambda: 1_760_000_000_000, randbytes=_fixed_bytes)
    generated = [factory() for _ in range(50)]
    assert generated == sorted(generated)
    assert len(set(generated)) == len(generated)
    assert all(ids.parse_ulid_timestamp_ms(value) == 1_760_000_000_000 for value in generated)


def test_factory_never_goes_backwards_when_clock_regresses() -> None:
    ticks = iter([2_000, 1_000, 3_000])
    factory = ids.MonotonicUlidFactory(clock_ms=lambda: next(ticks), randbytes=_fixed_bytes)
    first, second, third = factory(), factory(), factory()
    assert first < second < third
    assert ids.parse_ulid_timestamp_ms(second) == 2_000


@pytest.mark.parametrize(
    "value",
    ["", "0" * 25, "8" + "0" * 25, "0" * 25 + "U"],
)
def test_validate_ulid_rejects_malformed_values(value: str) -> None:
    with pytest.raises(ValueError):
        ids.validate_ulid(value)

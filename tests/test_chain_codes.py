#!/usr/bin/env python3
"""Chain code tables decode totally and encode with documented defaults."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chains.codes import CodeTable  # noqa: E402
from chains.evm_adapter import (  # noqa: E402
    EVM_ORDER_STATUSES,
    EVM_ORDER_TYPES,
    EVM_POSITION_SIDES,
    EVM_SIDES,
    EVM_TIME_IN_FORCE,
)
from chains.program_adapter import (  # noqa: E402
    PROGRAM_ORDER_STATUSES,
    PROGRAM_ORDER_TYPES,
    PROGRAM_SIDES,
    PROGRAM_TIME_IN_FORCE,
    variant_name,
)
from models import ORDER_STATUSES, ORDER_TYPES, TIME_IN_FORCE, UNKNOWN  # noqa: E402


def test_evm_decode_known_and_unknown_codes() -> None:
    assert EVM_SIDES.decode(0) == "buy"
    assert EVM_SIDES.decode(1) == "sell"
    assert EVM_SIDES.decode(7) == UNKNOWN
    assert EVM_POSITION_SIDES.decode(1) == "short"
    assert EVM_ORDER_STATUSES.decode("2") == "canceled"
    assert EVM_ORDER_TYPES.decode(3) == "stopLimit"
    assert EVM_TIME_IN_FORCE.decode(None) == UNKNOWN


def test_evm_encode_defaults() -> None:
    assert EVM_ORDER_TYPES.encode("market") == 0
    assert EVM_ORDER_TYPES.encode("bogus") == 1
    assert EVM_TIME_IN_FORCE.encode("GTD") == 3
    assert EVM_TIME_IN_FORCE.encode("XYZ") == 0


def test_side_encoding_never_guesses() -> None:
    with pytest.raises(ValueError):
        EVM_SIDES.encode("hold")
    with pytest.raises(ValueError):
        PROGRAM_SIDES.encode("hold")


def test_program_tables() -> None:
    assert PROGRAM_SIDES.decode("Bid") == "buy"
    assert PROGRAM_SIDES.encode("sell") == "Ask"
    assert PROGRAM_ORDER_TYPES.decode("StopMarket") == "stop"
    assert PROGRAM_ORDER_TYPES.decode(variant_name({"stopLimit": {}})) == "stopLimit"
    assert PROGRAM_ORDER_STATUSES.decode("Cancelled") == "canceled"
    assert PROGRAM_ORDER_STATUSES.decode("Liquidated") == UNKNOWN
    assert PROGRAM_TIME_IN_FORCE.encode("IOC") == "ImmediateOrCancel"
    assert PROGRAM_TIME_IN_FORCE.encode("nope") == "GoodTillCancelled"


def test_tables_cover_every_canonical_value() -> None:
    for table in (EVM_ORDER_STATUSES, PROGRAM_ORDER_STATUSES):
        assert set(table.canonical_values()) == set(ORDER_STATUSES)
    for table in (EVM_ORDER_TYPES, PROGRAM_ORDER_TYPES):
        assert set(table.canonical_values()) == set(ORDER_TYPES)
    for table in (EVM_TIME_IN_FORCE, PROGRAM_TIME_IN_FORCE):
        assert set(table.canonical_values()) == set(TIME_IN_FORCE)


def test_unhashable_raw_decodes_to_unknown() -> None:
    assert PROGRAM_SIDES.decode({"bid": {}, "ask": {}}) == UNKNOWN


def test_table_must_be_one_to_one() -> None:
    with pytest.raises(ValueError):
        CodeTable("dup", {0: "a", 1: "a"})
    with pytest.raises(ValueError):
        CodeTable("bad default", {0: "a"}, default="b")

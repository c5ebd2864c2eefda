from __future__ import annotations

from decimal import Decimal

import pytest

from rolu_rewards_api.domain.reward_ledger import (
    InvalidTransitionError,
    TokenTransactionStatus,
    can_transition,
    from_base_units,
    is_valid_address,
    is_valid_tx_hash,
    parse_amount_wei,
    require_transition,
    to_base_units,
)


def test_to_base_units_scales_whole_amounts() -> None:
    assert to_base_units(Decimal("42.0")) == 42_000_000_000_000_000_000
    assert str(to_base_units("42")) == "42000000000000000000"


def test_to_base_units_truncates_excess_precision() -> None:
    assert to_base_units("0.0000000000000000019") == 1
    assert to_base_units("1.23456789", decimals=6) == 1_234_567
    assert to_base_units("0.0000009", decimals=6) == 0


def test_to_base_units_rejects_non_numeric_input() -> None:
    with pytest.raises(ValueError):
        to_base_units("forty-two")
    with pytest.raises(ValueError):
        to_base_units("NaN")


def test_from_base_units_is_exact() -> None:
    assert from_base_units("42000000000000000000") == Decimal("42")
    assert from_base_units(1, decimals=6) == Decimal("0.000001")


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TokenTransactionStatus.QUEUED, TokenTransactionStatus.PROCESSING),
        (TokenTransactionStatus.QUEUED, TokenTransactionStatus.FAILED),
        (TokenTransactionStatus.PROCESSING, TokenTransactionStatus.COMPLETED),
        (TokenTransactionStatus.PROCESSING, TokenTransactionStatus.FAILED),
        (TokenTransactionStatus.PROCESSING, TokenTransactionStatus.QUEUED),
        (TokenTransactionStatus.FAILED, TokenTransactionStatus.QUEUED),
        (TokenTransactionStatus.FAILED, TokenTransactionStatus.COMPLETED),
    ],
)
def test_allowed_transitions(
    current: TokenTransactionStatus, target: TokenTransactionStatus
) -> None:
    assert can_transition(current, target)
    assert require_transition(current.value, target) == target


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TokenTransactionStatus.COMPLETED, TokenTransactionStatus.QUEUED),
        (TokenTransactionStatus.COMPLETED, TokenTransactionStatus.FAILED),
        (TokenTransactionStatus.COMPLETED, TokenTransactionStatus.PROCESSING),
        (TokenTransactionStatus.QUEUED, TokenTransactionStatus.COMPLETED),
        (TokenTransactionStatus.FAILED, TokenTransactionStatus.PROCESSING),
    ],
)
def test_forbidden_transitions(
    current: TokenTransactionStatus, target: TokenTransactionStatus
) -> None:
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError):
        require_transition(current.value, target)


def test_address_and_hash_validation() -> None:
    assert is_valid_address("0x" + "aB" * 20)
    assert not is_valid_address("0x" + "ab" * 19)
    assert not is_valid_address(None)
    assert not is_valid_address("")
    assert is_valid_tx_hash("0x" + "0f" * 32)
    assert not is_valid_tx_hash("0x" + "0f" * 31)


def test_parse_amount_wei_accepts_only_positive_integers() -> None:
    assert parse_amount_wei("1000") == 1000
    assert parse_amount_wei(" 7 ") == 7
    assert parse_amount_wei("0") is None
    assert parse_amount_wei("-5") is None
    assert parse_amount_wei("1.5") is None
    assert parse_amount_wei(None) is None

from __future__ import annotations

import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext
from enum import StrEnum


class ClaimableRewardStatus(StrEnum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    EXPIRED = "EXPIRED"


class TokenTransactionStatus(StrEnum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ReviewReason(StrEnum):
    AMOUNT_MISMATCH = "amount_mismatch"
    NONCE_MISMATCH = "nonce_mismatch"
    TRANSFER_NOT_FOUND = "transfer_not_found"
    CALLDATA_MISMATCH = "calldata_mismatch"
    TRANSACTION_HASH_REUSED = "transaction_hash_reused"


# PROCESSING -> QUEUED only for rows whose submission was never broadcast or
# was proven not to have been mined.
_TOKEN_TRANSACTION_TRANSITIONS: dict[TokenTransactionStatus, frozenset[TokenTransactionStatus]] = {
    TokenTransactionStatus.QUEUED: frozenset(
        {TokenTransactionStatus.PROCESSING, TokenTransactionStatus.FAILED}
    ),
    TokenTransactionStatus.PROCESSING: frozenset(
        {
            TokenTransactionStatus.COMPLETED,
            TokenTransactionStatus.FAILED,
            TokenTransactionStatus.QUEUED,
        }
    ),
    TokenTransactionStatus.FAILED: frozenset(
        {TokenTransactionStatus.QUEUED, TokenTransactionStatus.COMPLETED}
    ),
    TokenTransactionStatus.COMPLETED: frozenset(),
}

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class InvalidTransitionError(ValueError):
    pass


def can_transition(current: TokenTransactionStatus, target: TokenTransactionStatus) -> bool:
    return target in _TOKEN_TRANSACTION_TRANSITIONS[current]


def require_transition(current: str, target: TokenTransactionStatus) -> TokenTransactionStatus:
    status = TokenTransactionStatus(current)
    if not can_transition(status, target):
        raise InvalidTransitionError(f"{status.value} -> {target.value} is not allowed")
    return target


def to_base_units(amount: Decimal | str | int, decimals: int = 18) -> int:
    """Scale a decimal reward amount to integer base units, truncating any excess precision."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid amount: {amount!r}")
    with localcontext() as ctx:
        ctx.prec = 80
        scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(amount_wei: int | str, decimals: int = 18) -> Decimal:
    return Decimal(int(amount_wei)) / (Decimal(10) ** decimals)


def is_valid_address(value: str | None) -> bool:
    return bool(value) and bool(_ADDRESS_RE.match(value))


def is_valid_tx_hash(value: str | None) -> bool:
    return bool(value) and bool(_TX_HASH_RE.match(value))


def normalize_address(value: str) -> str:
    return value.lower()


def parse_amount_wei(value: str | None) -> int | None:
    if value is None:
        return None
    raw = value.strip()
    if not raw.isdigit():
        return None
    parsed = int(raw)
    if parsed <= 0:
        return None
    return parsed

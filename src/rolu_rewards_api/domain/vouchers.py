from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Annotated

from eth_abi.packed import encode_packed
from eth_account import Account
from eth_utils import keccak, to_hex
from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rolu_rewards_api.db.models import ClaimableReward, User
from rolu_rewards_api.domain.errors import AppError, configuration_error
from rolu_rewards_api.domain.reward_ledger import (
    ClaimableRewardStatus,
    is_valid_address,
    normalize_address,
    to_base_units,
)
from rolu_rewards_api.settings import Settings, get_settings
from rolu_rewards_api.time import UtcNow

logger = logging.getLogger("rolu_rewards_api.vouchers")

NonceGenerator = Callable[[], int]

_NONCE_ATTEMPTS = 5


def generate_voucher_nonce() -> int:
    return secrets.randbits(128)


def voucher_message_hash(destination_address: str, amount_wei: int, nonce: int) -> bytes:
    """Hash that the rewards contract recomputes: keccak256(abi.encodePacked(address, uint256, uint256))."""
    packed = encode_packed(
        ["address", "uint256", "uint256"],
        [normalize_address(destination_address), amount_wei, nonce],
    )
    return keccak(packed)


class VoucherSigner:
    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address.lower()

    def sign(self, destination_address: str, amount_wei: int, nonce: int) -> str:
        message_hash = voucher_message_hash(destination_address, amount_wei, nonce)
        signed = self._account.unsafe_sign_hash(message_hash)
        return to_hex(signed.signature)


def get_voucher_signer(settings: Settings = Depends(get_settings)) -> VoucherSigner:
    if settings.reward_signer_private_key is None:
        raise configuration_error(
            "signing_key_not_configured",
            "Reward signing key is not configured",
        )
    try:
        return VoucherSigner(settings.reward_signer_private_key.get_secret_value())
    except ValueError as exc:
        raise configuration_error(
            "signing_key_not_configured",
            "Reward signing key is invalid",
        ) from exc


VoucherSignerDep = Annotated[VoucherSigner, Depends(get_voucher_signer)]


@dataclass(frozen=True)
class IssuedVoucher:
    claimable_reward_id: str
    destination_address: str
    amount: Decimal
    amount_wei: str
    nonce: str
    signature: str


async def _allocate_nonce(db: AsyncSession, generate_nonce: NonceGenerator) -> int:
    for _ in range(_NONCE_ATTEMPTS):
        candidate = generate_nonce()
        existing = await db.scalar(
            select(ClaimableReward.id).where(ClaimableReward.nonce == str(candidate))
        )
        if existing is None:
            return candidate
        logger.warning("voucher_nonce_collision", extra={"nonce": str(candidate)})
    raise RuntimeError("Could not allocate a unique voucher nonce")


async def issue_voucher(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    signer: VoucherSigner,
    settings: Settings,
    now: UtcNow,
    generate_nonce: NonceGenerator = generate_voucher_nonce,
) -> IssuedVoucher:
    """Snapshot the user's balance into a PENDING claimable reward and sign a voucher for it.

    The balance is debited in the same transaction that creates the ledger row, with the
    user row locked, so a balance can only ever be snapshotted once.
    """
    user = await db.scalar(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if user is None:
        raise AppError(code="auth_required", message="Authentication required", status_code=401)

    balance = user.reward_balance or Decimal("0")
    if balance <= 0:
        raise AppError(
            code="no_rewards_available",
            message="No rewards available to claim",
            status_code=400,
        )
    if not is_valid_address(user.wallet_address):
        raise AppError(
            code="user_wallet_not_found",
            message="User wallet address not found",
            status_code=404,
        )

    pending = await db.scalar(
        select(ClaimableReward).where(
            ClaimableReward.user_id == user.id,
            ClaimableReward.status == ClaimableRewardStatus.PENDING.value,
        )
    )
    if pending is not None:
        raise AppError(
            code="claim_already_pending",
            message="A claim is already pending for this user",
            status_code=409,
            details={"claimable_reward_id": str(pending.id)},
        )

    amount_wei = to_base_units(balance, settings.token_decimals)
    if amount_wei <= 0:
        raise AppError(
            code="no_rewards_available",
            message="No rewards available to claim",
            status_code=400,
        )

    nonce = await _allocate_nonce(db, generate_nonce)
    destination = normalize_address(user.wallet_address)
    signature = signer.sign(destination, amount_wei, nonce)

    timestamp = now()
    reward = ClaimableReward(
        user_id=user.id,
        amount=balance,
        amount_wei=str(amount_wei),
        destination_address=destination,
        nonce=str(nonce),
        status=ClaimableRewardStatus.PENDING.value,
        created_at=timestamp,
        updated_at=timestamp,
    )
    db.add(reward)
    user.reward_balance = Decimal("0")
    await db.flush()
    await db.commit()

    logger.info(
        "voucher_issued",
        extra={
            "claimable_reward_id": str(reward.id),
            "user_id": str(user.id),
            "amount_wei": str(amount_wei),
        },
    )
    return IssuedVoucher(
        claimable_reward_id=str(reward.id),
        destination_address=destination,
        amount=balance,
        amount_wei=str(amount_wei),
        nonce=str(nonce),
        signature=signature,
    )

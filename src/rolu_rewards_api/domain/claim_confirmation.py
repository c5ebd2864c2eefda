from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rolu_rewards_api.db.models import ClaimableReward
from rolu_rewards_api.domain.chain import ChainClient, ChainRpcError, TransactionReceipt
from rolu_rewards_api.domain.contracts import decode_claim_rewards, decode_transfer_log
from rolu_rewards_api.domain.errors import AppError, configuration_error
from rolu_rewards_api.domain.notifications import (
    NotificationDispatcher,
    push_notification,
    record_claim_confirmed_notification,
)
from rolu_rewards_api.domain.reward_ledger import (
    ClaimableRewardStatus,
    ReviewReason,
    is_valid_tx_hash,
)
from rolu_rewards_api.observability import metrics
from rolu_rewards_api.settings import Settings
from rolu_rewards_api.time import UtcNow

logger = logging.getLogger("rolu_rewards_api.claim_confirmation")


class ClaimConfirmationStatus(StrEnum):
    CLAIMED = "claimed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class ClaimConfirmationResult:
    status: ClaimConfirmationStatus
    claimable_reward_id: uuid.UUID
    transaction_hash: str
    confirmations: int | None = None
    reason: str | None = None
    already_claimed: bool = False

    @property
    def success(self) -> bool:
        return self.status == ClaimConfirmationStatus.CLAIMED


def _parse_uint(value: str, field_name: str) -> int:
    raw = value.strip()
    if not raw.isdigit():
        raise AppError(
            code="invalid_claim_amount",
            message=f"{field_name} must be a non-negative integer string",
            status_code=400,
            details={field_name: value},
        )
    return int(raw)


async def _flag_for_review(
    db: AsyncSession,
    reward: ClaimableReward,
    reason: ReviewReason,
    *,
    now: UtcNow,
    details: dict[str, object],
) -> AppError:
    reward.review_reason = reason.value
    reward.flagged_at = now()
    await db.commit()
    metrics.claim_confirmations_total.labels(outcome="flagged").inc()
    logger.warning(
        "claim_flagged_for_review",
        extra={"claimable_reward_id": str(reward.id), "review_reason": reason.value, **details},
    )
    return AppError(
        code="claim_flagged_for_review",
        message="Claim confirmation does not match the issued voucher and was flagged for review",
        status_code=409,
        details={"claimable_reward_id": str(reward.id), "review_reason": reason.value},
    )


def _pending(
    reward: ClaimableReward, transaction_hash: str, reason: str, confirmations: int | None = None
) -> ClaimConfirmationResult:
    metrics.claim_confirmations_total.labels(outcome="pending").inc()
    logger.info(
        "claim_confirmation_pending",
        extra={
            "claimable_reward_id": str(reward.id),
            "transaction_hash": transaction_hash,
            "reason": reason,
        },
    )
    return ClaimConfirmationResult(
        status=ClaimConfirmationStatus.PENDING,
        claimable_reward_id=reward.id,
        transaction_hash=transaction_hash,
        confirmations=confirmations,
        reason=reason,
    )


def _has_matching_transfer(
    receipt: TransactionReceipt, *, token_address: str, destination: str, amount_wei: int
) -> bool:
    for log in receipt.logs:
        transfer = decode_transfer_log(log)
        if transfer is None:
            continue
        if (
            transfer.token_address == token_address
            and transfer.to_address == destination
            and transfer.amount_wei == amount_wei
        ):
            return True
    return False


async def confirm_claim(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    claimable_reward_id: uuid.UUID,
    transaction_hash: str,
    amount_claimed_wei: str,
    nonce_used: str,
    chain: ChainClient,
    settings: Settings,
    dispatcher: NotificationDispatcher,
    now: UtcNow,
) -> ClaimConfirmationResult:
    """Close the loop on a client-submitted voucher claim.

    A mined claimRewards call to the rewards contract that carries the voucher amount and
    nonce, and whose receipt pays that amount to the voucher's destination, marks the
    reward CLAIMED exactly once. A request whose amount or nonce differs from the issued
    voucher, or a mined transaction that is not that call or does not pay it, is flagged
    for manual review. Anything not yet verifiable is reported as pending and changes
    nothing.
    """
    if not is_valid_tx_hash(transaction_hash):
        raise AppError(
            code="invalid_transaction_hash",
            message="Invalid transaction hash",
            status_code=400,
            details={"transaction_hash": transaction_hash},
        )
    transaction_hash = transaction_hash.lower()
    claimed_amount = _parse_uint(amount_claimed_wei, "amount_claimed_wei")
    claimed_nonce = _parse_uint(nonce_used, "nonce_used")

    reward = await db.scalar(
        select(ClaimableReward)
        .where(ClaimableReward.id == claimable_reward_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if reward is None or reward.user_id != user_id:
        raise AppError(
            code="claimable_reward_not_found",
            message="Claimable reward not found",
            status_code=404,
        )

    if reward.status == ClaimableRewardStatus.CLAIMED.value:
        if reward.claim_transaction_hash == transaction_hash:
            metrics.claim_confirmations_total.labels(outcome="already_claimed").inc()
            return ClaimConfirmationResult(
                status=ClaimConfirmationStatus.CLAIMED,
                claimable_reward_id=reward.id,
                transaction_hash=transaction_hash,
                already_claimed=True,
            )
        raise AppError(
            code="claim_already_confirmed",
            message="Claimable reward has already been claimed with another transaction",
            status_code=409,
            details={"claimable_reward_id": str(reward.id)},
        )

    if reward.review_reason is not None:
        raise AppError(
            code="claim_under_review",
            message="Claimable reward is under manual review",
            status_code=409,
            details={"claimable_reward_id": str(reward.id), "review_reason": reward.review_reason},
        )

    expected_amount = int(reward.amount_wei)
    expected_nonce = int(reward.nonce)
    if claimed_amount != expected_amount:
        raise await _flag_for_review(
            db,
            reward,
            ReviewReason.AMOUNT_MISMATCH,
            now=now,
            details={
                "transaction_hash": transaction_hash,
                "expected_amount_wei": str(expected_amount),
                "claimed_amount_wei": str(claimed_amount),
            },
        )
    if claimed_nonce != expected_nonce:
        raise await _flag_for_review(
            db,
            reward,
            ReviewReason.NONCE_MISMATCH,
            now=now,
            details={"transaction_hash": transaction_hash, "claimed_nonce": str(claimed_nonce)},
        )

    reused_by = await db.scalar(
        select(ClaimableReward.id).where(
            ClaimableReward.claim_transaction_hash == transaction_hash,
            ClaimableReward.id != reward.id,
        )
    )
    if reused_by is not None:
        raise await _flag_for_review(
            db,
            reward,
            ReviewReason.TRANSACTION_HASH_REUSED,
            now=now,
            details={"transaction_hash": transaction_hash, "claimed_by": str(reused_by)},
        )

    if settings.token_contract_address is None or settings.rewards_contract_address is None:
        raise configuration_error(
            "claim_verification_not_configured",
            "Token and rewards contract addresses must both be configured",
        )

    try:
        receipt = await chain.get_transaction_receipt(transaction_hash)
        if receipt is None:
            return _pending(reward, transaction_hash, "not_mined")
        if not receipt.succeeded:
            metrics.claim_confirmations_total.labels(outcome="failed").inc()
            logger.info(
                "claim_transaction_reverted",
                extra={"claimable_reward_id": str(reward.id), "transaction_hash": transaction_hash},
            )
            return ClaimConfirmationResult(
                status=ClaimConfirmationStatus.FAILED,
                claimable_reward_id=reward.id,
                transaction_hash=transaction_hash,
                reason="reverted",
            )
        latest_block = await chain.get_block_number()
        confirmations = 0
        if receipt.block_number is not None:
            confirmations = max(0, latest_block - receipt.block_number + 1)
        if confirmations < settings.claim_min_confirmations:
            return _pending(reward, transaction_hash, "awaiting_confirmations", confirmations)
        transaction = await chain.get_transaction(transaction_hash)
        if transaction is None:
            return _pending(reward, transaction_hash, "transaction_unavailable", confirmations)
    except ChainRpcError as exc:
        logger.warning(
            "claim_confirmation_rpc_error",
            extra={"claimable_reward_id": str(reward.id), "error": str(exc)},
        )
        return _pending(reward, transaction_hash, "rpc_error")

    # Only a claimRewards call carrying this voucher consumes its nonce on chain; any
    # other transfer to the same wallet leaves the voucher redeemable.
    call = None
    if transaction.to_address == settings.rewards_contract_address:
        call = decode_claim_rewards(transaction.input)
    if call is None or call.amount_wei != expected_amount or call.nonce != expected_nonce:
        raise await _flag_for_review(
            db,
            reward,
            ReviewReason.CALLDATA_MISMATCH,
            now=now,
            details={
                "transaction_hash": transaction_hash,
                "transaction_to": transaction.to_address,
            },
        )

    if not _has_matching_transfer(
        receipt,
        token_address=settings.token_contract_address,
        destination=reward.destination_address,
        amount_wei=expected_amount,
    ):
        raise await _flag_for_review(
            db,
            reward,
            ReviewReason.TRANSFER_NOT_FOUND,
            now=now,
            details={"transaction_hash": transaction_hash},
        )

    claimed_at = now()
    reward.status = ClaimableRewardStatus.CLAIMED.value
    reward.claim_transaction_hash = transaction_hash
    reward.claimed_at = claimed_at
    notification = record_claim_confirmed_notification(
        user_id=reward.user_id,
        claimable_reward_id=reward.id,
        amount=reward.amount,
        transaction_hash=transaction_hash,
    )
    db.add(notification)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise AppError(
            code="claim_already_confirmed",
            message="Transaction hash has already been used to confirm a claim",
            status_code=409,
            details={"transaction_hash": transaction_hash},
        ) from exc

    metrics.claim_confirmations_total.labels(outcome="claimed").inc()
    logger.info(
        "claim_confirmed",
        extra={
            "claimable_reward_id": str(reward.id),
            "transaction_hash": transaction_hash,
            "confirmations": confirmations,
        },
    )
    await push_notification(dispatcher, notification, wallet_address=reward.destination_address)
    return ClaimConfirmationResult(
        status=ClaimConfirmationStatus.CLAIMED,
        claimable_reward_id=reward.id,
        transaction_hash=transaction_hash,
        confirmations=confirmations,
    )

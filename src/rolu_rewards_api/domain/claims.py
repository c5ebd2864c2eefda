from __future__ import annotations

import datetime as dt
import logging
import uuid
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rolu_rewards_api.db.models import ClaimableReward, TokenTransaction, User
from rolu_rewards_api.domain.chain import ChainClient, ChainRpcError
from rolu_rewards_api.domain.errors import AppError
from rolu_rewards_api.domain.reward_ledger import (
    ClaimableRewardStatus,
    TokenTransactionStatus,
    is_valid_address,
    normalize_address,
    require_transition,
    to_base_units,
)
from rolu_rewards_api.settings import Settings
from rolu_rewards_api.time import UtcNow

logger = logging.getLogger("rolu_rewards_api.claims")


async def _lock_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.scalar(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if user is None:
        raise AppError(code="auth_required", message="Authentication required", status_code=401)
    return user


async def request_token_claim(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    amount: Decimal,
    settings: Settings,
    now: UtcNow,
) -> TokenTransaction:
    """Debit the balance and queue a server-side transfer for the next settlement run."""
    if amount <= 0:
        raise AppError(
            code="invalid_claim_amount",
            message="Claim amount must be positive",
            status_code=400,
            details={"amount": str(amount)},
        )
    amount_wei = to_base_units(amount, settings.token_decimals)
    if amount_wei <= 0:
        raise AppError(
            code="invalid_claim_amount",
            message="Claim amount is below the token precision",
            status_code=400,
            details={"amount": str(amount)},
        )

    user = await _lock_user(db, user_id)
    if not is_valid_address(user.wallet_address):
        raise AppError(
            code="user_wallet_not_found",
            message="User wallet address not found",
            status_code=404,
        )

    queued = await db.scalar(
        select(func.count())
        .select_from(TokenTransaction)
        .where(
            TokenTransaction.user_id == user.id,
            TokenTransaction.status == TokenTransactionStatus.QUEUED.value,
        )
    )
    if int(queued or 0) >= settings.max_pending_token_claims:
        raise AppError(
            code="max_pending_claims_reached",
            message="Too many claims are already waiting to be processed",
            status_code=400,
            details={"max_pending_claims": settings.max_pending_token_claims},
        )

    balance = user.reward_balance or Decimal("0")
    if balance < amount:
        raise AppError(
            code="insufficient_reward_balance",
            message="Reward balance is lower than the requested amount",
            status_code=400,
            details={"balance": str(balance), "amount": str(amount)},
        )

    timestamp = now()
    transaction = TokenTransaction(
        user_id=user.id,
        amount=amount,
        wallet_address=normalize_address(user.wallet_address),
        amount_wei=str(amount_wei),
        status=TokenTransactionStatus.QUEUED.value,
        retry_count=0,
        created_at=timestamp,
        updated_at=timestamp,
    )
    db.add(transaction)
    user.reward_balance = balance - amount
    await db.commit()

    logger.info(
        "token_claim_queued",
        extra={
            "token_transaction_id": str(transaction.id),
            "user_id": str(user.id),
            "amount_wei": str(amount_wei),
        },
    )
    return transaction


async def _get_token_transaction(db: AsyncSession, token_transaction_id: uuid.UUID) -> TokenTransaction:
    transaction = await db.scalar(
        select(TokenTransaction)
        .where(TokenTransaction.id == token_transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if transaction is None:
        raise AppError(
            code="token_transaction_not_found",
            message="Token transaction not found",
            status_code=404,
        )
    return transaction


def _invalid_transition(transaction: TokenTransaction, action: str) -> AppError:
    return AppError(
        code="invalid_token_transaction_transition",
        message=f"Cannot {action} a token transaction in status {transaction.status}",
        status_code=409,
        details={"status": transaction.status, "refunded": transaction.refunded_at is not None},
    )


async def _settled_on_chain(chain: ChainClient, transaction: TokenTransaction) -> bool:
    """True when the row's recorded batch transaction was in fact mined successfully."""
    if not transaction.batch_transaction_hash:
        return False
    try:
        receipt = await chain.get_transaction_receipt(transaction.batch_transaction_hash)
    except ChainRpcError as exc:
        raise AppError(
            code="chain_unavailable",
            message="Blockchain node is unavailable",
            status_code=502,
            details={"error": str(exc)},
        ) from exc
    return receipt is not None and receipt.succeeded


async def retry_token_transaction(
    db: AsyncSession,
    *,
    token_transaction_id: uuid.UUID,
    chain: ChainClient,
) -> TokenTransaction:
    """Operator path FAILED -> QUEUED, the only way a failed row re-enters the queue."""
    transaction = await _get_token_transaction(db, token_transaction_id)
    if transaction.status != TokenTransactionStatus.FAILED.value or transaction.refunded_at is not None:
        raise _invalid_transition(transaction, "retry")

    if await _settled_on_chain(chain, transaction):
        transaction.status = require_transition(
            transaction.status, TokenTransactionStatus.COMPLETED
        ).value
        transaction.error_message = None
        await db.commit()
        logger.info(
            "token_transaction_found_completed",
            extra={
                "token_transaction_id": str(transaction.id),
                "transaction_hash": transaction.batch_transaction_hash,
            },
        )
        return transaction

    transaction.status = require_transition(transaction.status, TokenTransactionStatus.QUEUED).value
    transaction.retry_count = 0
    transaction.error_message = None
    transaction.batch_transaction_hash = None
    transaction.submitted_nonce = None
    await db.commit()
    logger.info("token_transaction_requeued", extra={"token_transaction_id": str(transaction.id)})
    return transaction


async def refund_token_transaction(
    db: AsyncSession,
    *,
    token_transaction_id: uuid.UUID,
    chain: ChainClient,
    now: UtcNow,
) -> TokenTransaction:
    transaction = await _get_token_transaction(db, token_transaction_id)
    if transaction.status != TokenTransactionStatus.FAILED.value or transaction.refunded_at is not None:
        raise _invalid_transition(transaction, "refund")

    if await _settled_on_chain(chain, transaction):
        transaction.status = require_transition(
            transaction.status, TokenTransactionStatus.COMPLETED
        ).value
        transaction.error_message = None
        await db.commit()
        raise AppError(
            code="invalid_token_transaction_transition",
            message="Token transaction was already paid on chain",
            status_code=409,
            details={"status": transaction.status},
        )

    user = await _lock_user(db, transaction.user_id)
    user.reward_balance = (user.reward_balance or Decimal("0")) + transaction.amount
    transaction.refunded_at = now()
    await db.commit()
    logger.info(
        "token_transaction_refunded",
        extra={"token_transaction_id": str(transaction.id), "user_id": str(user.id)},
    )
    return transaction


async def expire_stale_claims(db: AsyncSession, *, retention_seconds: int, now: UtcNow) -> int:
    """Mark PENDING claimable rewards older than the retention window EXPIRED.

    Expiry is advisory: the balance is not returned and the voucher may still be
    confirmed later.
    """
    timestamp = now()
    cutoff = timestamp - dt.timedelta(seconds=retention_seconds)
    rewards = (
        await db.scalars(
            select(ClaimableReward).where(
                ClaimableReward.status == ClaimableRewardStatus.PENDING.value,
                ClaimableReward.created_at <= cutoff,
                ClaimableReward.review_reason.is_(None),
            )
        )
    ).all()
    for reward in rewards:
        reward.status = ClaimableRewardStatus.EXPIRED.value
        reward.expired_at = timestamp
    if rewards:
        await db.commit()
        logger.info("claimable_rewards_expired", extra={"expired_count": len(rewards)})
    return len(rewards)

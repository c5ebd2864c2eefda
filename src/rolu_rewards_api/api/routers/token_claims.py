from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select

from rolu_rewards_api.api.routers.rewards import format_amount
from rolu_rewards_api.api.schemas import (
    TokenClaimRequest,
    TokenTransactionPublic,
    TokenTransactionsResponse,
)
from rolu_rewards_api.auth.deps import CurrentUser
from rolu_rewards_api.db.models import TokenTransaction
from rolu_rewards_api.db.session import DbSessionDep
from rolu_rewards_api.domain.claims import request_token_claim
from rolu_rewards_api.domain.reward_ledger import TokenTransactionStatus
from rolu_rewards_api.observability.ops import observe_operation
from rolu_rewards_api.settings import Settings, get_settings
from rolu_rewards_api.time import UtcNow, get_utcnow

router = APIRouter(prefix="/v1/token", tags=["token"])

_PENDING_STATUSES = (
    TokenTransactionStatus.QUEUED.value,
    TokenTransactionStatus.PROCESSING.value,
)


def token_transaction_to_public(transaction: TokenTransaction) -> TokenTransactionPublic:
    return TokenTransactionPublic(
        id=transaction.id,
        user_id=transaction.user_id,
        amount=format_amount(transaction.amount),
        amount_wei=transaction.amount_wei,
        wallet_address=transaction.wallet_address,
        status=transaction.status,
        retry_count=transaction.retry_count,
        error_message=transaction.error_message,
        batch_transaction_hash=transaction.batch_transaction_hash,
        refunded_at=transaction.refunded_at,
        created_at=transaction.created_at,
        updated_at=transaction.updated_at,
    )


@router.post("/claims", response_model=TokenTransactionPublic, status_code=201)
async def create_token_claim(
    payload: TokenClaimRequest,
    db: DbSessionDep,
    user: CurrentUser,
    settings: Settings = Depends(get_settings),
    now: UtcNow = Depends(get_utcnow),
) -> TokenTransactionPublic:
    async with observe_operation("token_claim_request", attributes={"user.id": str(user.id)}):
        transaction = await request_token_claim(
            db,
            user_id=user.id,
            amount=payload.amount,
            settings=settings,
            now=now,
        )
    return token_transaction_to_public(transaction)


async def _list_for_user(
    db: DbSessionDep, user: CurrentUser, statuses: tuple[str, ...], limit: int
) -> TokenTransactionsResponse:
    transactions = (
        await db.scalars(
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user.id, TokenTransaction.status.in_(statuses))
            .order_by(TokenTransaction.created_at.desc())
            .limit(limit)
        )
    ).all()
    return TokenTransactionsResponse(
        transactions=[token_transaction_to_public(transaction) for transaction in transactions]
    )


@router.get("/claims/pending", response_model=TokenTransactionsResponse)
async def list_pending_claims(
    db: DbSessionDep,
    user: CurrentUser,
    limit: int = Query(default=50, ge=1, le=200),
) -> TokenTransactionsResponse:
    return await _list_for_user(db, user, _PENDING_STATUSES, limit)


@router.get("/claims/failed", response_model=TokenTransactionsResponse)
async def list_failed_claims(
    db: DbSessionDep,
    user: CurrentUser,
    limit: int = Query(default=50, ge=1, le=200),
) -> TokenTransactionsResponse:
    return await _list_for_user(db, user, (TokenTransactionStatus.FAILED.value,), limit)

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select

from rolu_rewards_api.api.routers.cron import run_report_to_response, stats_to_public
from rolu_rewards_api.api.routers.rewards import format_amount
from rolu_rewards_api.api.routers.token_claims import token_transaction_to_public
from rolu_rewards_api.api.schemas import (
    AdminClaimableReward,
    AdminClaimableRewardsResponse,
    BatchRunResponse,
    InsufficientGasResponse,
    SettlementStatsPublic,
    TokenTransactionPublic,
)
from rolu_rewards_api.auth.deps import require_admin
from rolu_rewards_api.db.models import ClaimableReward
from rolu_rewards_api.db.session import DbSessionDep
from rolu_rewards_api.domain.chain import ChainClientDep
from rolu_rewards_api.domain.claims import (
    refund_token_transaction,
    retry_token_transaction,
)
from rolu_rewards_api.domain.notifications import NotificationDispatcherDep
from rolu_rewards_api.domain.settlement import get_settlement_stats, process_batch_claims
from rolu_rewards_api.observability.ops import observe_operation
from rolu_rewards_api.settings import Settings, get_settings
from rolu_rewards_api.time import Sleep, UtcNow, get_sleep, get_utcnow

router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def claimable_reward_to_admin(reward: ClaimableReward) -> AdminClaimableReward:
    return AdminClaimableReward(
        id=reward.id,
        user_id=reward.user_id,
        amount=format_amount(reward.amount),
        amount_wei=reward.amount_wei,
        destination_address=reward.destination_address,
        nonce=reward.nonce,
        status=reward.status,
        claim_transaction_hash=reward.claim_transaction_hash,
        review_reason=reward.review_reason,
        flagged_at=reward.flagged_at,
        expired_at=reward.expired_at,
        created_at=reward.created_at,
    )


@router.get("/settlement/stats", response_model=SettlementStatsPublic)
async def settlement_stats(
    db: DbSessionDep,
    settings: Settings = Depends(get_settings),
) -> SettlementStatsPublic:
    stats = await get_settlement_stats(db, max_retry_count=settings.settlement_max_retry_count)
    return stats_to_public(stats)


@router.post(
    "/settlement/run",
    response_model=BatchRunResponse,
    responses={400: {"model": InsufficientGasResponse}},
)
async def run_settlement(
    db: DbSessionDep,
    chain: ChainClientDep,
    dispatcher: NotificationDispatcherDep,
    settings: Settings = Depends(get_settings),
    now: UtcNow = Depends(get_utcnow),
    sleep: Sleep = Depends(get_sleep),
):
    report = await process_batch_claims(
        db,
        chain=chain,
        settings=settings,
        dispatcher=dispatcher,
        now=now,
        sleep=sleep,
    )
    return run_report_to_response(report)


@router.post("/token-transactions/{token_transaction_id}/retry", response_model=TokenTransactionPublic)
async def retry_token_claim(
    token_transaction_id: uuid.UUID,
    db: DbSessionDep,
    chain: ChainClientDep,
) -> TokenTransactionPublic:
    async with observe_operation(
        "token_transaction_retry", attributes={"token_transaction.id": str(token_transaction_id)}
    ):
        transaction = await retry_token_transaction(
            db, token_transaction_id=token_transaction_id, chain=chain
        )
    return token_transaction_to_public(transaction)


@router.post("/token-transactions/{token_transaction_id}/refund", response_model=TokenTransactionPublic)
async def refund_token_claim(
    token_transaction_id: uuid.UUID,
    db: DbSessionDep,
    chain: ChainClientDep,
    now: UtcNow = Depends(get_utcnow),
) -> TokenTransactionPublic:
    async with observe_operation(
        "token_transaction_refund", attributes={"token_transaction.id": str(token_transaction_id)}
    ):
        transaction = await refund_token_transaction(
            db, token_transaction_id=token_transaction_id, chain=chain, now=now
        )
    return token_transaction_to_public(transaction)


@router.get("/claimable-rewards/review", response_model=AdminClaimableRewardsResponse)
async def list_claims_under_review(
    db: DbSessionDep,
    limit: int = Query(default=100, ge=1, le=500),
) -> AdminClaimableRewardsResponse:
    rewards = (
        await db.scalars(
            select(ClaimableReward)
            .where(ClaimableReward.review_reason.is_not(None))
            .order_by(ClaimableReward.flagged_at.desc())
            .limit(limit)
        )
    ).all()
    return AdminClaimableRewardsResponse(
        claimable_rewards=[claimable_reward_to_admin(reward) for reward in rewards]
    )

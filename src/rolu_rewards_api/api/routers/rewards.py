from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from rolu_rewards_api.api.schemas import (
    ClaimableBalanceResponse,
    ConfirmClaimRequest,
    ConfirmClaimResponse,
    IssueVoucherResponse,
)
from rolu_rewards_api.auth.deps import CurrentUser
from rolu_rewards_api.db.session import DbSessionDep
from rolu_rewards_api.domain.chain import ChainClientDep
from rolu_rewards_api.domain.claim_confirmation import ClaimConfirmationStatus, confirm_claim
from rolu_rewards_api.domain.notifications import NotificationDispatcherDep
from rolu_rewards_api.domain.vouchers import VoucherSignerDep, issue_voucher
from rolu_rewards_api.observability.ops import observe_operation
from rolu_rewards_api.settings import Settings, get_settings
from rolu_rewards_api.time import UtcNow, get_utcnow

router = APIRouter(prefix="/v1/rewards", tags=["rewards"])


def format_amount(amount: Decimal | None) -> str:
    if amount is None:
        return "0"
    return format(amount.normalize(), "f")


@router.get("/claimable-balance", response_model=ClaimableBalanceResponse)
async def claimable_balance(user: CurrentUser) -> ClaimableBalanceResponse:
    return ClaimableBalanceResponse(claimable_amount=format_amount(user.reward_balance))


@router.post("/vouchers", response_model=IssueVoucherResponse)
async def create_voucher(
    db: DbSessionDep,
    user: CurrentUser,
    signer: VoucherSignerDep,
    settings: Settings = Depends(get_settings),
    now: UtcNow = Depends(get_utcnow),
) -> IssueVoucherResponse:
    async with observe_operation("voucher_issue", attributes={"user.id": str(user.id)}):
        voucher = await issue_voucher(
            db,
            user_id=user.id,
            signer=signer,
            settings=settings,
            now=now,
        )
    return IssueVoucherResponse(
        amount_wei=voucher.amount_wei,
        nonce=voucher.nonce,
        signature=voucher.signature,
        claimable_reward_id=voucher.claimable_reward_id,
        destination_address=voucher.destination_address,
        amount=format_amount(voucher.amount),
    )


@router.post(
    "/claims/confirm",
    response_model=ConfirmClaimResponse,
    responses={202: {"model": ConfirmClaimResponse}},
)
async def confirm_reward_claim(
    payload: ConfirmClaimRequest,
    db: DbSessionDep,
    user: CurrentUser,
    chain: ChainClientDep,
    dispatcher: NotificationDispatcherDep,
    settings: Settings = Depends(get_settings),
    now: UtcNow = Depends(get_utcnow),
):
    async with observe_operation(
        "claim_confirm", attributes={"claimable_reward.id": str(payload.claimable_reward_id)}
    ):
        result = await confirm_claim(
            db,
            user_id=user.id,
            claimable_reward_id=payload.claimable_reward_id,
            transaction_hash=payload.transaction_hash,
            amount_claimed_wei=payload.amount_claimed_wei,
            nonce_used=payload.nonce_used,
            chain=chain,
            settings=settings,
            dispatcher=dispatcher,
            now=now,
        )
    response = ConfirmClaimResponse(
        success=result.success,
        status=result.status.value,
        claimable_reward_id=result.claimable_reward_id,
        transaction_hash=result.transaction_hash,
        confirmations=result.confirmations,
        reason=result.reason,
        already_claimed=result.already_claimed,
    )
    if result.status == ClaimConfirmationStatus.PENDING:
        return JSONResponse(status_code=202, content=response.model_dump(mode="json", by_alias=True))
    return response

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update

from rolu_rewards_api.api.routers.rewards import format_amount
from rolu_rewards_api.api.schemas import (
    MeResponse,
    NotificationPublic,
    NotificationsReadResponse,
    NotificationsResponse,
)
from rolu_rewards_api.auth.deps import CurrentUser
from rolu_rewards_api.db.models import ClaimableReward, UserNotification
from rolu_rewards_api.db.session import DbSessionDep
from rolu_rewards_api.domain.errors import AppError
from rolu_rewards_api.domain.reward_ledger import ClaimableRewardStatus
from rolu_rewards_api.time import UtcNow, get_utcnow

router = APIRouter(prefix="/v1/me", tags=["me"])


@router.get("", response_model=MeResponse)
async def me(db: DbSessionDep, user: CurrentUser) -> MeResponse:
    # At most one PENDING voucher exists per user; newest wins if history says otherwise.
    pending_id = await db.scalar(
        select(ClaimableReward.id)
        .where(
            ClaimableReward.user_id == user.id,
            ClaimableReward.status == ClaimableRewardStatus.PENDING.value,
        )
        .order_by(ClaimableReward.created_at.desc())
        .limit(1)
    )
    return MeResponse(
        user_id=user.id,
        wallet_address=user.wallet_address,
        reward_balance=format_amount(user.reward_balance),
        pending_claimable_reward_id=pending_id,
    )


def _unread(user_id: uuid.UUID):
    return (UserNotification.user_id == user_id, UserNotification.read_at.is_(None))


@router.get("/notifications", response_model=NotificationsResponse)
async def list_notifications(
    db: DbSessionDep,
    user: CurrentUser,
    limit: int = Query(default=50, ge=1, le=200),
    unread_only: bool = Query(default=False),
) -> NotificationsResponse:
    filters = _unread(user.id) if unread_only else (UserNotification.user_id == user.id,)
    rows = await db.scalars(
        select(UserNotification)
        .where(*filters)
        .order_by(UserNotification.created_at.desc())
        .limit(limit)
    )
    unread_count = await db.scalar(
        select(func.count()).select_from(UserNotification).where(*_unread(user.id))
    )
    return NotificationsResponse(
        notifications=[NotificationPublic.model_validate(row) for row in rows],
        unread_count=unread_count or 0,
    )


@router.post("/notifications/read-all", response_model=NotificationsReadResponse)
async def mark_all_notifications_read(
    db: DbSessionDep,
    user: CurrentUser,
    now: UtcNow = Depends(get_utcnow),
) -> NotificationsReadResponse:
    result = await db.execute(
        update(UserNotification).where(*_unread(user.id)).values(read_at=now())
    )
    await db.commit()
    return NotificationsReadResponse(marked_read=result.rowcount or 0)


@router.post("/notifications/{notification_id}/read", response_model=NotificationPublic)
async def mark_notification_read(
    notification_id: uuid.UUID,
    db: DbSessionDep,
    user: CurrentUser,
    now: UtcNow = Depends(get_utcnow),
) -> NotificationPublic:
    notification = await db.get(UserNotification, notification_id)
    if notification is None or notification.user_id != user.id:
        raise AppError(
            code="notification_not_found",
            message="Notification not found",
            status_code=404,
        )
    if notification.read_at is None:
        notification.read_at = now()
        await db.commit()
    return NotificationPublic.model_validate(notification)

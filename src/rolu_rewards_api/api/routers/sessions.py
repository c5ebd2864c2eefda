from __future__ import annotations

import datetime as dt
import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rolu_rewards_api.api.schemas import AnonymousSessionRequest, AnonymousSessionResponse
from rolu_rewards_api.auth.deps import ActiveSession
from rolu_rewards_api.auth.tokens import generate_opaque_token, hash_opaque_token
from rolu_rewards_api.db.models import Device, Session, User
from rolu_rewards_api.db.session import DbSessionDep
from rolu_rewards_api.settings import Settings, get_settings
from rolu_rewards_api.time import UtcNow, get_utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/sessions", tags=["sessions"])


async def _device_owner(db: AsyncSession, device_id: str, now: UtcNow) -> User:
    """Return the user bound to ``device_id``, creating both on first sight.

    Two first requests for the same device race on the UNIQUE device id; the
    loser rolls back and adopts the winner's user.
    """
    device = await db.scalar(select(Device).where(Device.device_id == device_id))
    if device is None:
        timestamp = now()
        user = User(created_at=timestamp)
        try:
            db.add(user)
            await db.flush()
            db.add(
                Device(
                    device_id=device_id,
                    user_id=user.id,
                    created_at=timestamp,
                    last_seen_at=timestamp,
                )
            )
            await db.flush()
            logger.info("device_registered", extra={"user_id": str(user.id)})
            return user
        except IntegrityError:
            await db.rollback()
            device = await db.scalar(select(Device).where(Device.device_id == device_id))
            if device is None:
                raise

    device.last_seen_at = now()
    user = await db.get(User, device.user_id)
    if user is None:
        raise RuntimeError("Device references missing user")
    return user


def _set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_ttl_seconds,
        path="/",
        domain=settings.session_cookie_domain,
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite=settings.session_cookie_samesite,
    )


@router.post("/anonymous", response_model=AnonymousSessionResponse)
async def create_anonymous_session(
    body: AnonymousSessionRequest,
    response: Response,
    db: DbSessionDep,
    settings: Settings = Depends(get_settings),
    now: UtcNow = Depends(get_utcnow),
) -> AnonymousSessionResponse:
    user = await _device_owner(db, str(body.device_id), now)

    token = generate_opaque_token()
    expires_at = now() + dt.timedelta(seconds=settings.session_ttl_seconds)
    db.add(
        Session(
            user_id=user.id,
            token_hash=hash_opaque_token(token, settings),
            expires_at=expires_at,
        )
    )
    await db.commit()

    _set_session_cookie(response, token, settings)
    return AnonymousSessionResponse(user_id=user.id, session_expires_at=expires_at)


@router.delete("/current", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_current_session(
    db: DbSessionDep,
    session: ActiveSession,
    settings: Settings = Depends(get_settings),
    now: UtcNow = Depends(get_utcnow),
) -> Response:
    if session is not None:
        session.revoked_at = now()
        await db.commit()
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        domain=settings.session_cookie_domain,
    )
    return response

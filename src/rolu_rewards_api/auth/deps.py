from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy import select

from rolu_rewards_api.auth.tokens import hash_opaque_token, secrets_match
from rolu_rewards_api.db.models import Session, User
from rolu_rewards_api.db.session import DbSessionDep
from rolu_rewards_api.domain.errors import AppError
from rolu_rewards_api.settings import Settings, get_settings
from rolu_rewards_api.time import UtcNow, get_utcnow

SettingsDep = Annotated[Settings, Depends(get_settings)]


async def get_active_session(
    db: DbSessionDep,
    settings: SettingsDep,
    now: Annotated[UtcNow, Depends(get_utcnow)],
    request: Request,
) -> Session | None:
    """Session row behind the request cookie, if it is unrevoked and unexpired."""
    token = request.cookies.get(settings.session_cookie_name)
    if not token:
        return None
    session = await db.scalar(
        select(Session).where(
            Session.token_hash == hash_opaque_token(token, settings),
            Session.revoked_at.is_(None),
        )
    )
    if session is None or session.expires_at <= now():
        return None
    return session


ActiveSession = Annotated[Session | None, Depends(get_active_session)]


async def get_optional_user(db: DbSessionDep, session: ActiveSession) -> User | None:
    if session is None:
        return None
    return await db.get(User, session.user_id)


async def require_user(user: Annotated[User | None, Depends(get_optional_user)]) -> User:
    if user is None:
        raise AppError(code="auth_required", message="Authentication required", status_code=401)
    return user


CurrentUser = Annotated[User, Depends(require_user)]


async def require_admin(
    settings: SettingsDep,
    admin_token: Annotated[str | None, Header(alias="X-Admin-Token")] = None,
) -> None:
    if not secrets_match(admin_token, settings.admin_api_token):
        raise AppError(
            code="admin_auth_required",
            message="Admin authentication required",
            status_code=401,
        )


async def require_cron(
    settings: SettingsDep,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    # An unset secret leaves the trigger open, for local schedulers.
    if settings.cron_secret is None:
        return
    if not secrets_match(authorization, f"Bearer {settings.cron_secret}"):
        raise AppError(
            code="cron_auth_required",
            message="Cron authentication required",
            status_code=401,
        )

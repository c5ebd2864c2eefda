from __future__ import annotations

import datetime as dt
import uuid

import pytest
from httpx import AsyncClient

from rolu_rewards_api.auth.tokens import generate_opaque_token, hash_opaque_token
from rolu_rewards_api.db.models import Session, User
from rolu_rewards_api.settings import get_settings


async def create_user_session(
    db_sessionmaker,
    *,
    expires_at: dt.datetime,
    revoked_at: dt.datetime | None = None,
) -> tuple[uuid.UUID, str]:
    settings = get_settings()
    token = generate_opaque_token()
    token_hash = hash_opaque_token(token, settings)
    async with db_sessionmaker() as session:
        user = User()
        session.add(user)
        await session.flush()
        session.add(
            Session(
                user_id=user.id,
                token_hash=token_hash,
                expires_at=expires_at,
                revoked_at=revoked_at,
            )
        )
        await session.commit()
    return user.id, token


@pytest.mark.asyncio
@pytest.mark.parametrize("cookie_state", ["missing", "unknown", "expired"])
async def test_me_rejects_requests_without_a_live_session(
    db_sessionmaker, client: AsyncClient, cookie_state: str
) -> None:
    settings = get_settings()
    if cookie_state == "unknown":
        client.cookies.set(settings.session_cookie_name, "not-a-real-cookie")
    elif cookie_state == "expired":
        _, token = await create_user_session(
            db_sessionmaker,
            expires_at=dt.datetime.now(dt.UTC) - dt.timedelta(seconds=1),
        )
        client.cookies.set(settings.session_cookie_name, token)

    response = await client.get("/v1/me")

    assert response.status_code == 401
    assert response.json()["error"] == {
        "code": "auth_required",
        "message": "Authentication required",
        "details": {},
    }


@pytest.mark.asyncio
async def test_live_session_cookie_resolves_the_user(db_sessionmaker, client: AsyncClient) -> None:
    user_id, token = await create_user_session(
        db_sessionmaker,
        expires_at=dt.datetime.now(dt.UTC) + dt.timedelta(hours=1),
    )
    client.cookies.set(get_settings().session_cookie_name, token)

    me = await client.get("/v1/me")

    assert me.status_code == 200
    assert me.json()["user_id"] == str(user_id)
    assert me.json()["reward_balance"] == "0"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("GET", "/v1/rewards/claimable-balance"),
        ("POST", "/v1/rewards/vouchers"),
        ("GET", "/v1/token/claims/pending"),
        ("GET", "/v1/token/claims/failed"),
    ],
)
async def test_reward_endpoints_require_session(
    client: AsyncClient, method: str, path: str
) -> None:
    response = await client.request(method, path)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "auth_required"


@pytest.mark.asyncio
async def test_revoked_session_cannot_issue_voucher(db_sessionmaker, client: AsyncClient) -> None:
    settings = get_settings()
    _, revoked_token = await create_user_session(
        db_sessionmaker,
        expires_at=dt.datetime.now(dt.UTC) + dt.timedelta(hours=1),
        revoked_at=dt.datetime.now(dt.UTC),
    )
    client.cookies.set(settings.session_cookie_name, revoked_token)

    response = await client.post("/v1/rewards/vouchers")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "auth_required"


@pytest.mark.asyncio
async def test_admin_endpoints_require_admin_token(client: AsyncClient) -> None:
    missing = await client.get("/v1/admin/settlement/stats")
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "admin_auth_required"

    wrong = await client.get(
        "/v1/admin/settlement/stats", headers={"X-Admin-Token": "not-the-token"}
    )
    assert wrong.status_code == 401

    ok = await client.get(
        "/v1/admin/settlement/stats", headers={"X-Admin-Token": get_settings().admin_api_token}
    )
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_cron_trigger_requires_bearer_secret(client: AsyncClient) -> None:
    missing = await client.post("/v1/cron/batch-process-claims")
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "cron_auth_required"

    wrong = await client.get(
        "/v1/cron/batch-process-claims", headers={"Authorization": "Bearer nope"}
    )
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_cron_trigger_is_open_when_no_secret_configured(
    client: AsyncClient, monkeypatch
) -> None:
    monkeypatch.delenv("CRON_SECRET")
    get_settings.cache_clear()

    response = await client.get("/v1/cron/batch-process-claims")
    assert response.status_code == 200
    assert response.json()["success"] is True

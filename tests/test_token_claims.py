from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient

from rolu_rewards_api.db.models import ClaimableReward, TokenTransaction, User
from rolu_rewards_api.domain.claims import expire_stale_claims
from rolu_rewards_api.settings import get_settings
from rolu_rewards_api.time import utcnow

WALLET = "0x" + "ab" * 20
WEI = 10**18


async def _create_session(client: AsyncClient) -> uuid.UUID:
    response = await client.post(
        "/v1/sessions/anonymous",
        json={"device_id": str(uuid.uuid4())},
    )
    assert response.status_code == 200
    return uuid.UUID(response.json()["user_id"])


async def _set_user_rewards(
    db_sessionmaker, user_id: uuid.UUID, *, balance: str, wallet_address: str | None = WALLET
) -> None:
    async with db_sessionmaker() as session:
        user = await session.get(User, user_id)
        assert user is not None
        user.reward_balance = Decimal(balance)
        user.wallet_address = wallet_address
        await session.commit()


async def _user_balance(db_sessionmaker, user_id: uuid.UUID) -> Decimal:
    async with db_sessionmaker() as session:
        user = await session.get(User, user_id)
        assert user is not None
        return user.reward_balance


async def _create_failed_transfer(
    db_sessionmaker,
    *,
    amount: int = 3,
    balance: str = "0",
    batch_transaction_hash: str | None = None,
) -> tuple[uuid.UUID, uuid.UUID]:
    async with db_sessionmaker() as session:
        user = User(wallet_address=WALLET, reward_balance=Decimal(balance))
        session.add(user)
        await session.flush()
        row = TokenTransaction(
            user_id=user.id,
            amount=Decimal(amount),
            wallet_address=WALLET,
            amount_wei=str(amount * WEI),
            status="FAILED",
            retry_count=4,
            error_message="batch transaction reverted",
            batch_transaction_hash=batch_transaction_hash,
        )
        session.add(row)
        await session.commit()
        return user.id, row.id


async def _create_claimable_reward(
    db_sessionmaker,
    *,
    user_id: uuid.UUID | None = None,
    amount: int = 2,
    status: str = "PENDING",
    age: dt.timedelta = dt.timedelta(),
    review_reason: str | None = None,
) -> tuple[uuid.UUID, uuid.UUID]:
    async with db_sessionmaker() as session:
        if user_id is None:
            user = User(wallet_address=WALLET)
            session.add(user)
            await session.flush()
            user_id = user.id
        timestamp = utcnow() - age
        reward = ClaimableReward(
            user_id=user_id,
            amount=Decimal(amount),
            amount_wei=str(amount * WEI),
            destination_address=WALLET,
            nonce=str(uuid.uuid4().int),
            status=status,
            review_reason=review_reason,
            created_at=timestamp,
            updated_at=timestamp,
        )
        session.add(reward)
        await session.commit()
        return user_id, reward.id


def _admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": get_settings().admin_api_token}


@pytest.mark.asyncio
async def test_token_claim_debits_balance_and_queues_transfer(
    db_sessionmaker, client: AsyncClient
) -> None:
    user_id = await _create_session(client)
    await _set_user_rewards(db_sessionmaker, user_id, balance="10")

    response = await client.post("/v1/token/claims", json={"amount": "4"})

    assert response.status_code == 201
    payload = response.json()
    assert payload["status"] == "QUEUED"
    assert payload["amount"] == "4"
    assert payload["amountWei"] == str(4 * WEI)
    assert payload["walletAddress"] == WALLET
    assert payload["retryCount"] == 0
    assert await _user_balance(db_sessionmaker, user_id) == Decimal("6")

    pending = await client.get("/v1/token/claims/pending")
    assert pending.status_code == 200
    assert [row["id"] for row in pending.json()["transactions"]] == [payload["id"]]

    failed = await client.get("/v1/token/claims/failed")
    assert failed.json() == {"transactions": []}


@pytest.mark.asyncio
async def test_token_claim_above_balance_is_rejected(db_sessionmaker, client: AsyncClient) -> None:
    user_id = await _create_session(client)
    await _set_user_rewards(db_sessionmaker, user_id, balance="10")

    response = await client.post("/v1/token/claims", json={"amount": "20"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "insufficient_reward_balance"
    assert await _user_balance(db_sessionmaker, user_id) == Decimal("10")


@pytest.mark.asyncio
async def test_token_claim_without_wallet_is_rejected(db_sessionmaker, client: AsyncClient) -> None:
    user_id = await _create_session(client)
    await _set_user_rewards(db_sessionmaker, user_id, balance="10", wallet_address=None)

    response = await client.post("/v1/token/claims", json={"amount": "1"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "user_wallet_not_found"


@pytest.mark.asyncio
async def test_queued_claims_are_capped_per_user(db_sessionmaker, client: AsyncClient) -> None:
    user_id = await _create_session(client)
    await _set_user_rewards(db_sessionmaker, user_id, balance="10")
    for _ in range(get_settings().max_pending_token_claims):
        created = await client.post("/v1/token/claims", json={"amount": "1"})
        assert created.status_code == 201

    response = await client.post("/v1/token/claims", json={"amount": "1"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "max_pending_claims_reached"
    assert await _user_balance(db_sessionmaker, user_id) == Decimal("7")


@pytest.mark.asyncio
async def test_failed_claims_are_listed_for_owner(db_sessionmaker, client: AsyncClient) -> None:
    user_id = await _create_session(client)
    await _set_user_rewards(db_sessionmaker, user_id, balance="10")
    created = await client.post("/v1/token/claims", json={"amount": "2"})
    async with db_sessionmaker() as session:
        row = await session.get(TokenTransaction, uuid.UUID(created.json()["id"]))
        assert row is not None
        row.status = "FAILED"
        row.error_message = "batch transaction reverted"
        await session.commit()

    failed = await client.get("/v1/token/claims/failed")
    pending = await client.get("/v1/token/claims/pending")

    assert [row["id"] for row in failed.json()["transactions"]] == [created.json()["id"]]
    assert failed.json()["transactions"][0]["errorMessage"] == "batch transaction reverted"
    assert pending.json()["transactions"] == []


@pytest.mark.asyncio
async def test_admin_retry_requeues_failed_transfer(db_sessionmaker, client: AsyncClient) -> None:
    _, row_id = await _create_failed_transfer(db_sessionmaker)

    response = await client.post(
        f"/v1/admin/token-transactions/{row_id}/retry", headers=_admin_headers()
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "QUEUED"
    assert payload["retryCount"] == 0
    assert payload["errorMessage"] is None

    again = await client.post(
        f"/v1/admin/token-transactions/{row_id}/retry", headers=_admin_headers()
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "invalid_token_transaction_transition"


@pytest.mark.asyncio
async def test_admin_retry_completes_row_already_paid_on_chain(
    db_sessionmaker, client: AsyncClient, fake_chain
) -> None:
    paid_hash = "0x" + "44" * 32
    fake_chain.add_receipt(paid_hash, succeeded=True)
    _, row_id = await _create_failed_transfer(db_sessionmaker, batch_transaction_hash=paid_hash)

    response = await client.post(
        f"/v1/admin/token-transactions/{row_id}/retry", headers=_admin_headers()
    )

    assert response.status_code == 200
    assert response.json()["status"] == "COMPLETED"
    assert response.json()["batchTransactionHash"] == paid_hash


@pytest.mark.asyncio
async def test_admin_refund_returns_amount_once(db_sessionmaker, client: AsyncClient) -> None:
    user_id, row_id = await _create_failed_transfer(db_sessionmaker, amount=3, balance="1")

    response = await client.post(
        f"/v1/admin/token-transactions/{row_id}/refund", headers=_admin_headers()
    )

    assert response.status_code == 200
    assert response.json()["refundedAt"] is not None
    assert response.json()["status"] == "FAILED"
    assert await _user_balance(db_sessionmaker, user_id) == Decimal("4")

    again = await client.post(
        f"/v1/admin/token-transactions/{row_id}/refund", headers=_admin_headers()
    )
    assert again.status_code == 409
    retry = await client.post(
        f"/v1/admin/token-transactions/{row_id}/retry", headers=_admin_headers()
    )
    assert retry.status_code == 409
    assert retry.json()["error"]["details"]["refunded"] is True
    assert await _user_balance(db_sessionmaker, user_id) == Decimal("4")


@pytest.mark.asyncio
async def test_admin_refund_is_refused_when_transfer_was_paid(
    db_sessionmaker, client: AsyncClient, fake_chain
) -> None:
    paid_hash = "0x" + "55" * 32
    fake_chain.add_receipt(paid_hash, succeeded=True)
    user_id, row_id = await _create_failed_transfer(
        db_sessionmaker, balance="1", batch_transaction_hash=paid_hash
    )

    response = await client.post(
        f"/v1/admin/token-transactions/{row_id}/refund", headers=_admin_headers()
    )

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "invalid_token_transaction_transition"
    assert await _user_balance(db_sessionmaker, user_id) == Decimal("1")
    async with db_sessionmaker() as session:
        row = await session.get(TokenTransaction, row_id)
        assert row is not None
        assert row.status == "COMPLETED"


@pytest.mark.asyncio
async def test_expire_stale_claims_only_touches_old_unreviewed_pending_rows(
    db_sessionmaker,
) -> None:
    retention = get_settings().claim_retention_seconds
    old = dt.timedelta(seconds=retention + 60)
    _, stale_id = await _create_claimable_reward(db_sessionmaker, age=old)
    _, fresh_id = await _create_claimable_reward(db_sessionmaker)
    _, flagged_id = await _create_claimable_reward(
        db_sessionmaker, age=old, review_reason="amount_mismatch"
    )
    _, claimed_id = await _create_claimable_reward(db_sessionmaker, age=old, status="CLAIMED")

    async with db_sessionmaker() as session:
        expired = await expire_stale_claims(session, retention_seconds=retention, now=utcnow)

    assert expired == 1
    async with db_sessionmaker() as session:
        statuses = {
            reward_id: (await session.get(ClaimableReward, reward_id)).status
            for reward_id in (stale_id, fresh_id, flagged_id, claimed_id)
        }
    assert statuses == {
        stale_id: "EXPIRED",
        fresh_id: "PENDING",
        flagged_id: "PENDING",
        claimed_id: "CLAIMED",
    }


@pytest.mark.asyncio
async def test_expired_voucher_never_returns_its_amount_to_the_balance(
    db_sessionmaker, client: AsyncClient
) -> None:
    user_id = await _create_session(client)
    await _set_user_rewards(db_sessionmaker, user_id, balance="3")
    voucher = (await client.post("/v1/rewards/vouchers")).json()
    retention = get_settings().claim_retention_seconds
    async with db_sessionmaker() as session:
        reward = await session.get(ClaimableReward, uuid.UUID(voucher["claimableRewardId"]))
        assert reward is not None
        reward.created_at = utcnow() - dt.timedelta(seconds=retention + 60)
        await session.commit()
    async with db_sessionmaker() as session:
        assert await expire_stale_claims(session, retention_seconds=retention, now=utcnow) == 1

    recredit = await client.post(
        f"/v1/admin/claimable-rewards/{voucher['claimableRewardId']}/recredit",
        headers=_admin_headers(),
    )
    second = await client.post("/v1/rewards/vouchers")

    assert recredit.status_code == 404
    assert await _user_balance(db_sessionmaker, user_id) == Decimal("0")
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "no_rewards_available"

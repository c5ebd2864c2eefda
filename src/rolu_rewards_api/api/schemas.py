from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class HealthResponse(BaseModel):
    status: str = "ok"


class AnonymousSessionRequest(BaseModel):
    device_id: uuid.UUID


class AnonymousSessionResponse(BaseModel):
    user_id: uuid.UUID
    session_expires_at: dt.datetime


class MeResponse(BaseModel):
    user_id: uuid.UUID
    wallet_address: str | None = None
    reward_balance: str
    pending_claimable_reward_id: uuid.UUID | None = None


class NotificationPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str
    title: str
    body: str | None = None
    created_at: dt.datetime
    read_at: dt.datetime | None = None
    details: dict[str, object] | None = None


class NotificationsResponse(BaseModel):
    notifications: list[NotificationPublic]
    unread_count: int = 0


class NotificationsReadResponse(BaseModel):
    marked_read: int


class CamelModel(BaseModel):
    """Reward and settlement payloads use camelCase on the wire and accept either form."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClaimableBalanceResponse(CamelModel):
    claimable_amount: str


class IssueVoucherResponse(CamelModel):
    amount_wei: str
    nonce: str
    signature: str
    claimable_reward_id: uuid.UUID
    destination_address: str
    amount: str


class ConfirmClaimRequest(CamelModel):
    transaction_hash: str = Field(min_length=66, max_length=66)
    amount_claimed_wei: str = Field(pattern=r"^[0-9]{1,78}$")
    nonce_used: str = Field(pattern=r"^[0-9]{1,78}$")
    claimable_reward_id: uuid.UUID


class ConfirmClaimResponse(CamelModel):
    success: bool
    status: Literal["claimed", "pending", "failed"]
    claimable_reward_id: uuid.UUID
    transaction_hash: str
    confirmations: int | None = None
    reason: str | None = None
    already_claimed: bool = False


class TokenClaimRequest(CamelModel):
    amount: Decimal = Field(max_digits=36, decimal_places=18)


class TokenTransactionPublic(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    amount: str
    amount_wei: str | None = None
    wallet_address: str | None = None
    status: str
    retry_count: int
    error_message: str | None = None
    batch_transaction_hash: str | None = None
    refunded_at: dt.datetime | None = None
    created_at: dt.datetime
    updated_at: dt.datetime


class TokenTransactionsResponse(CamelModel):
    transactions: list[TokenTransactionPublic]


class SettlementStatsPublic(CamelModel):
    queued: int
    processing: int
    completed: int
    failed: int
    retriable_failed: int
    invalid_data: int
    total: int
    oldest_queued_at: dt.datetime | None = None


class HousekeepingPublic(CamelModel):
    invalidated: int
    reconciled_completed: int
    requeued: int
    failed: int
    expired_claims: int


class BatchRunResponse(CamelModel):
    success: bool
    processed_count: int
    batches_processed: int
    gas_limited: bool
    completed_count: int
    requeued_count: int
    failed_count: int
    pending_count: int
    deferred_count: int
    before_stats: SettlementStatsPublic
    after_stats: SettlementStatsPublic
    housekeeping: HousekeepingPublic
    aborted_reason: str | None = None


class InsufficientGasResponse(CamelModel):
    success: bool = False
    error: Literal["INSUFFICIENT_GAS"] = "INSUFFICIENT_GAS"
    balance: str
    minimum_required: str


class AdminClaimableReward(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    amount: str
    amount_wei: str
    destination_address: str
    nonce: str
    status: str
    claim_transaction_hash: str | None = None
    review_reason: str | None = None
    flagged_at: dt.datetime | None = None
    expired_at: dt.datetime | None = None
    created_at: dt.datetime


class AdminClaimableRewardsResponse(CamelModel):
    claimable_rewards: list[AdminClaimableReward]

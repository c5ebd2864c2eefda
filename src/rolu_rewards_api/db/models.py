from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from rolu_rewards_api.domain.reward_ledger import ClaimableRewardStatus, TokenTransactionStatus


class Base(DeclarativeBase):
    pass


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class UtcDateTime(TypeDecorator[dt.datetime]):
    """Timezone-aware timestamp that always comes back in UTC, including on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect) -> dt.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not allowed")
        return value.astimezone(dt.UTC)

    def process_result_value(self, value: dt.datetime | None, dialect) -> dt.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.UTC)
        return value.astimezone(dt.UTC)


RewardAmount = Numeric(36, 18, asdecimal=True)
JsonDocument = JSON().with_variant(JSONB(), "postgresql")

_CLAIMABLE_REWARD_STATUSES = ", ".join(f"'{status.value}'" for status in ClaimableRewardStatus)
_TOKEN_TRANSACTION_STATUSES = ", ".join(f"'{status.value}'" for status in TokenTransactionStatus)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at: Mapped[dt.datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(42), nullable=True, index=True)
    reward_balance: Mapped[Decimal] = mapped_column(
        RewardAmount, nullable=False, default=Decimal("0")
    )

    devices: Mapped[list[Device]] = relationship(back_populates="user")
    sessions: Mapped[list[Session]] = relationship(back_populates="user")


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
    last_seen_at: Mapped[dt.datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)

    user: Mapped[User] = relationship(back_populates="devices")


class Session(Base):
    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
    expires_at: Mapped[dt.datetime] = mapped_column(UtcDateTime, nullable=False)
    revoked_at: Mapped[dt.datetime | None] = mapped_column(UtcDateTime, nullable=True)

    user: Mapped[User] = relationship(back_populates="sessions")


class ClaimableReward(Base):
    __tablename__ = "claimable_rewards"
    __table_args__ = (
        CheckConstraint(
            f"status in ({_CLAIMABLE_REWARD_STATUSES})",
            name="ck_claimable_rewards_status",
        ),
        Index("ix_claimable_rewards_status", "status"),
        Index("ix_claimable_rewards_user_status", "user_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(RewardAmount, nullable=False)
    amount_wei: Mapped[str] = mapped_column(String(78), nullable=False)
    destination_address: Mapped[str] = mapped_column(String(42), nullable=False)
    nonce: Mapped[str] = mapped_column(String(78), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ClaimableRewardStatus.PENDING.value
    )
    claim_transaction_hash: Mapped[str | None] = mapped_column(
        String(66), nullable=True, unique=True
    )
    claimed_at: Mapped[dt.datetime | None] = mapped_column(UtcDateTime, nullable=True)
    review_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    flagged_at: Mapped[dt.datetime | None] = mapped_column(UtcDateTime, nullable=True)
    expired_at: Mapped[dt.datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class TokenTransaction(Base):
    __tablename__ = "token_transactions"
    __table_args__ = (
        CheckConstraint(
            f"status in ({_TOKEN_TRANSACTION_STATUSES})",
            name="ck_token_transactions_status",
        ),
        Index("ix_token_transactions_status", "status"),
        Index("ix_token_transactions_status_created", "status", "created_at"),
        Index("ix_token_transactions_user_status", "user_id", "status"),
        Index("ix_token_transactions_batch_transaction_hash", "batch_transaction_hash"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(RewardAmount, nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    amount_wei: Mapped[str | None] = mapped_column(String(78), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TokenTransactionStatus.QUEUED.value
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    batch_transaction_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    submitted_nonce: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refunded_at: Mapped[dt.datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class UserNotification(Base):
    __tablename__ = "user_notifications"
    __table_args__ = (
        Index("ix_user_notifications_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, object] | None] = mapped_column(JsonDocument, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
    read_at: Mapped[dt.datetime | None] = mapped_column(UtcDateTime, nullable=True)

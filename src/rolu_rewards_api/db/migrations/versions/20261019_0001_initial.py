"""initial

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

CLAIMABLE_REWARD_STATUSES = ("PENDING", "CLAIMED", "EXPIRED")
TOKEN_TRANSACTION_STATUSES = ("QUEUED", "PROCESSING", "COMPLETED", "FAILED")


def _in_list(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{value}'" for value in values)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("wallet_address", sa.String(length=42), nullable=True),
        sa.Column(
            "reward_balance",
            sa.Numeric(36, 18),
            nullable=False,
            server_default="0",
        ),
    )
    op.create_index("ix_users_wallet_address", "users", ["wallet_address"])

    op.create_table(
        "devices",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("device_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_devices_device_id", "devices", ["device_id"], unique=True)

    op.create_table(
        "sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sessions_token_hash", "sessions", ["token_hash"], unique=True)

    op.create_table(
        "claimable_rewards",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Numeric(36, 18), nullable=False),
        sa.Column("amount_wei", sa.String(length=78), nullable=False),
        sa.Column("destination_address", sa.String(length=42), nullable=False),
        sa.Column("nonce", sa.String(length=78), nullable=False, unique=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("claim_transaction_hash", sa.String(length=66), nullable=True, unique=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_reason", sa.String(length=64), nullable=True),
        sa.Column("flagged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            f"status in ({_in_list(CLAIMABLE_REWARD_STATUSES)})",
            name="ck_claimable_rewards_status",
        ),
    )
    op.create_index("ix_claimable_rewards_status", "claimable_rewards", ["status"])
    op.create_index(
        "ix_claimable_rewards_user_status", "claimable_rewards", ["user_id", "status"]
    )

    op.create_table(
        "token_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Numeric(36, 18), nullable=False),
        sa.Column("wallet_address", sa.String(length=42), nullable=True),
        sa.Column("amount_wei", sa.String(length=78), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("batch_transaction_hash", sa.String(length=66), nullable=True),
        sa.Column("submitted_nonce", sa.Integer(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            f"status in ({_in_list(TOKEN_TRANSACTION_STATUSES)})",
            name="ck_token_transactions_status",
        ),
    )
    op.create_index("ix_token_transactions_status", "token_transactions", ["status"])
    op.create_index(
        "ix_token_transactions_status_created", "token_transactions", ["status", "created_at"]
    )
    op.create_index(
        "ix_token_transactions_user_status", "token_transactions", ["user_id", "status"]
    )
    op.create_index(
        "ix_token_transactions_batch_transaction_hash",
        "token_transactions",
        ["batch_transaction_hash"],
    )

    op.create_table(
        "user_notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_user_notifications_user_created", "user_notifications", ["user_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_user_notifications_user_created", table_name="user_notifications")
    op.drop_table("user_notifications")
    op.drop_index("ix_token_transactions_batch_transaction_hash", table_name="token_transactions")
    op.drop_index("ix_token_transactions_user_status", table_name="token_transactions")
    op.drop_index("ix_token_transactions_status_created", table_name="token_transactions")
    op.drop_index("ix_token_transactions_status", table_name="token_transactions")
    op.drop_table("token_transactions")
    op.drop_index("ix_claimable_rewards_user_status", table_name="claimable_rewards")
    op.drop_index("ix_claimable_rewards_status", table_name="claimable_rewards")
    op.drop_table("claimable_rewards")
    op.drop_index("ix_sessions_token_hash", table_name="sessions")
    op.drop_table("sessions")
    op.drop_index("ix_devices_device_id", table_name="devices")
    op.drop_table("devices")
    op.drop_index("ix_users_wallet_address", table_name="users")
    op.drop_table("users")

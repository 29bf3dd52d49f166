"""create api_keys, api_usage and api_requests_log tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Gateway schema: hashed keys with scope/limits/timezone, one usage row
per key (upsert target for quota admission), append-only request log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "api_keys",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("prefix", sa.String(12), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("endpoints_allowed", postgresql.JSONB(), nullable=False, server_default=sa.text("'[\"all\"]'::jsonb")),
        sa.Column("rate_limit", sa.Integer(), nullable=True, server_default="1000"),
        sa.Column("daily_limit", sa.Integer(), nullable=True),
        sa.Column("monthly_limit", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key_hash", name="uq_api_keys_key_hash"),
        sa.CheckConstraint("status IN ('active', 'suspended', 'revoked')", name="ck_api_keys_status_valid"),
        sa.CheckConstraint("rate_limit IS NULL OR rate_limit >= 0", name="ck_api_keys_rate_limit_non_neg"),
        sa.CheckConstraint("daily_limit IS NULL OR daily_limit >= 0", name="ck_api_keys_daily_limit_non_neg"),
        sa.CheckConstraint("monthly_limit IS NULL OR monthly_limit >= 0", name="ck_api_keys_monthly_limit_non_neg"),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])
    op.create_index("ix_api_keys_timezone", "api_keys", ["timezone"])

    op.create_table(
        "api_usage",
        sa.Column("api_key_id", sa.UUID(), nullable=False),
        sa.Column("total_requests", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("daily_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_request_date", sa.Date(), nullable=True),
        sa.Column("last_request_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("api_key_id"),
        sa.ForeignKeyConstraint(["api_key_id"], ["api_keys.id"], ondelete="CASCADE"),
        sa.CheckConstraint("total_requests >= 0", name="ck_api_usage_total_non_neg"),
        sa.CheckConstraint("daily_requests >= 0", name="ck_api_usage_daily_non_neg"),
        sa.CheckConstraint("monthly_requests >= 0", name="ck_api_usage_monthly_non_neg"),
    )
    # Reset job scans by date
    op.create_index("ix_api_usage_last_request_date", "api_usage", ["last_request_date"])

    op.create_table(
        "api_requests_log",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("api_key_id", sa.UUID(), nullable=False),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("response_time_ms", sa.Integer(), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["api_key_id"], ["api_keys.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_api_requests_log_key_timestamp",
        "api_requests_log",
        ["api_key_id", "timestamp"],
    )


def downgrade() -> None:
    op.drop_index("ix_api_requests_log_key_timestamp", table_name="api_requests_log")
    op.drop_table("api_requests_log")
    op.drop_index("ix_api_usage_last_request_date", table_name="api_usage")
    op.drop_table("api_usage")
    op.drop_index("ix_api_keys_timezone", table_name="api_keys")
    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_table("api_keys")

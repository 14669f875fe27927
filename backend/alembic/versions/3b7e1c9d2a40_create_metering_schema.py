"""create metering schema

Revision ID: 3b7e1c9d2a40
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3b7e1c9d2a40"
down_revision = None
branch_labels = None
depends_on = None


TIERS = [
    # id, name, daily, monthly, gtmetrix, gtmetrix_cost, basic_cost, price_cents, description, sort
    ("tier_free", "free", 5, 100, False, 5, 1, 0, "Basic scans only", 0),
    ("tier_starter", "starter", 30, 1000, True, 3, 1, 1900, "Small sites and agencies getting started", 1),
    ("tier_pro", "pro", 60, 5000, True, 2, 1, 4900, "Daily monitoring with GTmetrix", 2),
    ("tier_enterprise", "enterprise", 300, 100000, True, 1, 1, 19900, "High volume and custom limits", 3),
]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    api_tiers = op.create_table(
        "api_tiers",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=32), nullable=False),
        sa.Column("daily_limit", sa.Integer(), nullable=False),
        sa.Column("monthly_limit", sa.Integer(), nullable=False),
        sa.Column("gtmetrix_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("gtmetrix_cost", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("basic_scan_cost", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("price_monthly_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_api_tiers_name"), "api_tiers", ["name"], unique=True)

    op.create_table(
        "api_quotas",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("tier_id", sa.String(length=64), nullable=True),
        sa.Column("total_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subscription_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pack_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_daily_reset", sa.DateTime(), nullable=True),
        sa.Column("last_monthly_reset", sa.DateTime(), nullable=True),
        sa.Column("reset_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["tier_id"], ["api_tiers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_api_quotas_user_id"), "api_quotas", ["user_id"], unique=True)

    op.create_table(
        "api_call_packs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("pack_size", sa.Integer(), nullable=False),
        sa.Column("calls_remaining", sa.Integer(), nullable=False),
        sa.Column("stripe_session_id", sa.String(length=255), nullable=True),
        sa.Column("purchased_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_api_call_packs_user_id"), "api_call_packs", ["user_id"], unique=False)
    op.create_index(
        "ix_api_call_packs_user_purchased_at", "api_call_packs", ["user_id", "purchased_at"], unique=False
    )

    op.create_table(
        "api_usage_logs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("api_key_id", sa.String(length=64), nullable=True),
        sa.Column("endpoint", sa.String(length=255), nullable=False),
        sa.Column("method", sa.String(length=16), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("called_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_api_usage_logs_user_id"), "api_usage_logs", ["user_id"], unique=False)
    op.create_index(op.f("ix_api_usage_logs_api_key_id"), "api_usage_logs", ["api_key_id"], unique=False)
    op.create_index(op.f("ix_api_usage_logs_called_at"), "api_usage_logs", ["called_at"], unique=False)
    op.create_index("ix_api_usage_logs_user_called_at", "api_usage_logs", ["user_id", "called_at"], unique=False)

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False),
        sa.Column("key_prefix", sa.String(length=16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_api_keys_user_id"), "api_keys", ["user_id"], unique=False)
    op.create_index(op.f("ix_api_keys_key_hash"), "api_keys", ["key_hash"], unique=True)

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("identifier", sa.String(length=128), nullable=False),
        sa.Column("identifier_type", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("tier", sa.String(length=32), nullable=False),
        sa.Column("endpoint", sa.String(length=255), nullable=False),
        sa.Column("method", sa.String(length=16), nullable=False),
        sa.Column("was_blocked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("request_count", sa.Integer(), nullable=False),
        sa.Column("limit_value", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_rate_limit_events_identifier"), "rate_limit_events", ["identifier"], unique=False)
    op.create_index(op.f("ix_rate_limit_events_created_at"), "rate_limit_events", ["created_at"], unique=False)

    op.create_table(
        "rate_limit_overrides",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("target_type", sa.String(length=16), nullable=False),
        sa.Column("target_id", sa.String(length=128), nullable=False),
        sa.Column("max_per_minute", sa.Integer(), nullable=False),
        sa.Column("max_per_day", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_rate_limit_overrides_target", "rate_limit_overrides", ["target_type", "target_id"], unique=False
    )

    op.create_table(
        "token_wallets",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "token_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("reference_id", sa.String(length=128), nullable=True),
        sa.Column("reference_type", sa.String(length=64), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(op.f("ix_token_transactions_user_id"), "token_transactions", ["user_id"], unique=False)
    op.create_index(
        "ix_token_transactions_user_created_at", "token_transactions", ["user_id", "created_at"], unique=False
    )

    op.create_table(
        "token_pricing",
        sa.Column("feature_code", sa.String(length=64), nullable=False),
        sa.Column("feature_name", sa.String(length=255), nullable=False),
        sa.Column("tokens_required", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("feature_code"),
    )

    op.bulk_insert(
        api_tiers,
        [
            {
                "id": tier_id,
                "name": name,
                "daily_limit": daily,
                "monthly_limit": monthly,
                "gtmetrix_enabled": gtmetrix,
                "gtmetrix_cost": gtmetrix_cost,
                "basic_scan_cost": basic_cost,
                "price_monthly_cents": price,
                "description": description,
                "sort_order": sort_order,
            }
            for tier_id, name, daily, monthly, gtmetrix, gtmetrix_cost, basic_cost, price, description, sort_order in TIERS
        ],
    )


def downgrade() -> None:
    op.drop_table("token_pricing")
    op.drop_index("ix_token_transactions_user_created_at", table_name="token_transactions")
    op.drop_index(op.f("ix_token_transactions_user_id"), table_name="token_transactions")
    op.drop_table("token_transactions")
    op.drop_table("token_wallets")
    op.drop_index("ix_rate_limit_overrides_target", table_name="rate_limit_overrides")
    op.drop_table("rate_limit_overrides")
    op.drop_index(op.f("ix_rate_limit_events_created_at"), table_name="rate_limit_events")
    op.drop_index(op.f("ix_rate_limit_events_identifier"), table_name="rate_limit_events")
    op.drop_table("rate_limit_events")
    op.drop_index(op.f("ix_api_keys_key_hash"), table_name="api_keys")
    op.drop_index(op.f("ix_api_keys_user_id"), table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_index("ix_api_usage_logs_user_called_at", table_name="api_usage_logs")
    op.drop_index(op.f("ix_api_usage_logs_called_at"), table_name="api_usage_logs")
    op.drop_index(op.f("ix_api_usage_logs_api_key_id"), table_name="api_usage_logs")
    op.drop_index(op.f("ix_api_usage_logs_user_id"), table_name="api_usage_logs")
    op.drop_table("api_usage_logs")
    op.drop_index("ix_api_call_packs_user_purchased_at", table_name="api_call_packs")
    op.drop_index(op.f("ix_api_call_packs_user_id"), table_name="api_call_packs")
    op.drop_table("api_call_packs")
    op.drop_index(op.f("ix_api_quotas_user_id"), table_name="api_quotas")
    op.drop_table("api_quotas")
    op.drop_index(op.f("ix_api_tiers_name"), table_name="api_tiers")
    op.drop_table("api_tiers")
    op.drop_table("users")

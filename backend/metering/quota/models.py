from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from metering.core.clock import utcnow
from metering.db.base import Base


class ApiTier(Base):
    __tablename__ = "api_tiers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. tier_pro
    name: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    gtmetrix_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    gtmetrix_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    basic_scan_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price_monthly_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ApiQuota(Base):
    __tablename__ = "api_quotas"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. q_abc123
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    tier_id: Mapped[str | None] = mapped_column(ForeignKey("api_tiers.id"), nullable=True)

    total_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subscription_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pack_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    daily_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_daily_reset: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_monthly_reset: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    reset_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class ApiCallPack(Base):
    __tablename__ = "api_call_packs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. cp_abc123
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    pack_size: Mapped[int] = mapped_column(Integer, nullable=False)
    calls_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    stripe_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchased_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


Index("ix_api_call_packs_user_purchased_at", ApiCallPack.user_id, ApiCallPack.purchased_at)


class ApiUsageLog(Base):
    __tablename__ = "api_usage_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. aul_abc123
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    api_key_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    called_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)


Index("ix_api_usage_logs_user_called_at", ApiUsageLog.user_id, ApiUsageLog.called_at)

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from metering.core.clock import utcnow
from metering.db.base import Base


class RateLimitEvent(Base):
    __tablename__ = "rate_limit_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. rle_abc123
    identifier: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    identifier_type: Mapped[str] = mapped_column(String(16), nullable=False)  # api_key | ip
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default="GET")
    was_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_value: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)


class RateLimitOverride(Base):
    __tablename__ = "rate_limit_overrides"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. rlo_abc123
    target_type: Mapped[str] = mapped_column(String(16), nullable=False)  # api_key | ip
    target_id: Mapped[str] = mapped_column(String(128), nullable=False)
    max_per_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    max_per_day: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


Index("ix_rate_limit_overrides_target", RateLimitOverride.target_type, RateLimitOverride.target_id)

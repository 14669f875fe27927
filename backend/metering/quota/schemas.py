from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class TierOut(BaseModel):
    id: str
    name: str
    daily_limit: int
    monthly_limit: int
    gtmetrix_enabled: bool
    gtmetrix_cost: int
    basic_scan_cost: int
    price_monthly_cents: int


class TiersListResponse(BaseModel):
    tiers: list[TierOut]


class QuotaOut(BaseModel):
    user_id: str
    total_calls: int
    used_calls: int
    subscription_calls: int
    pack_calls: int
    daily_used: int
    monthly_used: int
    last_daily_reset: datetime | None = None
    last_monthly_reset: datetime | None = None
    reset_at: datetime | None = None
    remaining: int


class QuotaWithTierOut(QuotaOut):
    tier: TierOut
    daily_remaining: int
    monthly_remaining: int


class UsageDayOut(BaseModel):
    date: str
    calls: int
    avg_response_time_ms: float | None = None


class UsageStatsResponse(BaseModel):
    days: int
    usage: list[UsageDayOut]


class UsageLogOut(BaseModel):
    id: str
    api_key_id: str | None = None
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int | None = None
    ip_address: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    called_at: datetime


class RecentUsageResponse(BaseModel):
    calls: list[UsageLogOut]


class CallPackOut(BaseModel):
    id: str
    pack_size: int
    calls_remaining: int
    stripe_session_id: str | None = None
    purchased_at: datetime


class CallPacksResponse(BaseModel):
    packs: list[CallPackOut]


class SetTierRequest(BaseModel):
    tier: str = Field(min_length=1, max_length=32)


class TierChangeResponse(BaseModel):
    user_id: str
    tier: str
    subscription_calls: int
    total_calls: int


class AddSubscriptionCallsRequest(BaseModel):
    calls: int = Field(ge=1, le=10_000_000)
    reset_at: datetime | None = None


class AddPackRequest(BaseModel):
    calls: int = Field(ge=1, le=10_000_000)
    stripe_session_id: str | None = Field(default=None, max_length=255)

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field


class OverrideCreateRequest(BaseModel):
    target_type: Literal["api_key", "ip"]
    target_id: str = Field(min_length=1, max_length=128)
    max_per_minute: int = Field(ge=1, le=1_000_000)
    max_per_day: int = Field(ge=1, le=100_000_000)
    reason: str | None = Field(default=None, max_length=500)
    expires_at: datetime | None = None


class OverrideOut(BaseModel):
    id: str
    target_type: str
    target_id: str
    max_per_minute: int
    max_per_day: int
    reason: str | None = None
    created_by: str
    expires_at: datetime | None = None
    is_active: bool
    created_at: datetime


class OverridesListResponse(BaseModel):
    overrides: list[OverrideOut]


class SendReportRequest(BaseModel):
    recipients: list[EmailStr] | None = None


class SendReportResponse(BaseModel):
    skipped: bool
    sent: int
    failed: list[str]
    subject: str | None = None
